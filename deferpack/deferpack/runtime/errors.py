from __future__ import annotations


class DeferError(Exception):
    """Base error for packaging-related failures."""


class ConfigError(DeferError):
    """Raised when runtime configuration is missing or invalid."""


class DependencyError(DeferError):
    """Raised when a dependency name or value cannot be packaged."""


class UnsupportedCallableError(DeferError):
    """Raised when a callable has no reconstructable representation (e.g. lambdas)."""


class ReconstructionError(DeferError):
    """Raised when a persisted package cannot be rebuilt from its bytes."""


class ValidationError(ReconstructionError):
    """Raised when a decoded payload does not conform to the expected structure."""


class UnresolvedDependencyError(DeferError, NameError):
    """
    Raised at call time when a free name is neither a package dependency nor
    available in the ambient environment.
    """

    def __init__(self, name: str, detail: str | None = None) -> None:
        message = (
            f"name {name!r} is not a dependency of this package and is not "
            "available in the ambient environment"
        )
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.name = name
