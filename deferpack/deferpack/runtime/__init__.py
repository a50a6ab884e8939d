"""
Runtime pieces behind `deferpack`.

Callables are captured as reconstructable representations (definition text or
import references), compiled without being run, and executed inside a
package-owned scope whose misses fall back to the ambient environment.
"""
