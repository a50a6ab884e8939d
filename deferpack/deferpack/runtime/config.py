from __future__ import annotations

import os
import pickle
from dataclasses import dataclass

from deferpack.runtime.errors import ConfigError


_TRUTHY = {"1", "true", "True", "yes", "YES"}
_FALSY = {"0", "false", "False", "no", "NO"}

_MIN_PICKLE_PROTOCOL = 2


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    if raw in _TRUTHY:
        return True
    if raw in _FALSY:
        return False
    raise ConfigError(f"Invalid boolean for `{name}`: {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for `{name}`: {raw!r}") from exc


@dataclass(frozen=True)
class DeferConfig:
    """
    Centralized runtime configuration.

    Notes
    - `pickle_protocol` only affects `persist()`; `restore()` reads any protocol
      the running interpreter understands.
    - Home modules are the modules the packaged callables were defined in. They
      form part of the ambient environment on the restoring side, so importing
      them there may run module-level code. Disable with
      `DEFERPACK_IMPORT_HOME_MODULES=0` to only consult already-loaded modules.
    """

    pickle_protocol: int = pickle.DEFAULT_PROTOCOL
    import_home_modules: bool = True
    ambient_main: bool = True

    @classmethod
    def from_env(cls) -> "DeferConfig":
        return cls(
            pickle_protocol=_env_int("DEFERPACK_PICKLE_PROTOCOL", pickle.DEFAULT_PROTOCOL),
            import_home_modules=_env_flag("DEFERPACK_IMPORT_HOME_MODULES", True),
            ambient_main=_env_flag("DEFERPACK_AMBIENT_MAIN", True),
        )

    def validate(self) -> None:
        """Validate the configuration against the running interpreter."""
        if not (_MIN_PICKLE_PROTOCOL <= self.pickle_protocol <= pickle.HIGHEST_PROTOCOL):
            raise ConfigError(
                "Unsupported `DEFERPACK_PICKLE_PROTOCOL`.\n"
                f"- Current: {self.pickle_protocol!r}\n"
                f"- Allowed: {_MIN_PICKLE_PROTOCOL}..{pickle.HIGHEST_PROTOCOL}"
            )


def load_config(config: DeferConfig | None = None) -> DeferConfig:
    """Return `config` (or the environment's configuration) after validating it."""
    cfg = config if config is not None else DeferConfig.from_env()
    cfg.validate()
    return cfg
