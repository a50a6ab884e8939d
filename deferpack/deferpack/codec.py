"""
Byte-level persistence of deferred packages.

Security notes
- `restore()` unpickles. Only restore bytes from a source you trust, exactly
  as with `pickle.loads()`.
- The payload carries definition text and captured closure values. It does not
  carry the libraries those definitions use; the restoring environment must
  provide them.
"""

from __future__ import annotations

import logging
import pickle
from typing import IO, Any, Mapping

import cloudpickle

from deferpack.deferred import Deferred
from deferpack.runtime.config import DeferConfig, load_config
from deferpack.runtime.errors import ReconstructionError
from deferpack.runtime.schemas import state_to_payload, validate_payload

logger = logging.getLogger(__name__)


def persist(package: Deferred, *, config: DeferConfig | None = None) -> bytes:
    """Serialize a package to bytes."""
    cfg = load_config(config) if config is not None else package.config
    data = cloudpickle.dumps(state_to_payload(package.state), protocol=cfg.pickle_protocol)
    logger.debug("Persisted package %s (%d bytes)", package.target_name, len(data))
    return data


def restore(
    data: bytes,
    *,
    ambient: Mapping[str, Any] | None = None,
    config: DeferConfig | None = None,
) -> Deferred:
    """
    Rebuild a package from `persist()` output.

    Raises:
        ReconstructionError: the bytes cannot be decoded or compiled.
        ValidationError: the decoded payload is structurally invalid.
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise ReconstructionError(f"Expected bytes, got {type(data).__name__}")

    try:
        payload = cloudpickle.loads(data)
    except (
        pickle.UnpicklingError,
        EOFError,
        ValueError,
        TypeError,
        KeyError,
        IndexError,
        AttributeError,
        ImportError,
    ) as exc:
        raise ReconstructionError(f"Cannot decode package bytes: {exc}") from exc

    # A pickled Deferred rebuilds itself through its __reduce__.
    if isinstance(payload, Deferred):
        return payload if ambient is None else payload.with_ambient(ambient)

    package = Deferred(validate_payload(payload), ambient=ambient, config=config)
    logger.debug("Restored package %r", package)
    return package


def dump(package: Deferred, fp: IO[bytes], *, config: DeferConfig | None = None) -> None:
    """Write `persist(package)` to a binary file object."""
    fp.write(persist(package, config=config))


def load(
    fp: IO[bytes],
    *,
    ambient: Mapping[str, Any] | None = None,
    config: DeferConfig | None = None,
) -> Deferred:
    """Read a package written by `dump()` from a binary file object."""
    return restore(fp.read(), ambient=ambient, config=config)
