"""Load FrameFleet configuration profiles from ``framefleet.toml`` files."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for older runtimes.
    import tomli as tomllib  # type: ignore[no-redef]

from apps.framefleet.utils.errors import FrameFleetConfigError

CONFIG_FILENAME = "framefleet.toml"
PROFILE_ENV = "FRAMEFLEET_PROFILE"
PROJECT_ROOT_ENV = "FRAMEFLEET_PROJECT_ROOT"
DEFAULT_PROFILE = "default"


@dataclass(frozen=True)
class ProfileContext:
    """A selected profile and the files that contributed to it."""

    name: str
    data: Mapping[str, Any]
    sources: tuple[Path, ...]


def config_paths(
    *, workspace: Path | None = None, project_root: Path | None = None
) -> list[Path]:
    """Return the candidate files, lowest precedence first.

    The user file lives at ``~/.config/framefleet/framefleet.toml``; the
    project root comes from *project_root*, ``FRAMEFLEET_PROJECT_ROOT`` or the
    current directory.
    """

    if project_root is None:
        env_root = os.environ.get(PROJECT_ROOT_ENV)
        project_root = Path(env_root) if env_root else Path.cwd()

    candidates = [
        Path.home() / ".config" / "framefleet" / CONFIG_FILENAME,
        project_root / CONFIG_FILENAME,
    ]
    if workspace is not None:
        candidates.append(workspace / CONFIG_FILENAME)

    unique: list[Path] = []
    for path in candidates:
        if path not in unique:
            unique.append(path)
    return unique


def _read(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except OSError as exc:  # pragma: no cover - filesystem errors are rare.
        raise FrameFleetConfigError(f"Unable to read '{path}': {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise FrameFleetConfigError(f"'{path}' is not valid TOML: {exc}") from exc


def _merge(base: dict[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = _merge(dict(current), value)
        else:
            merged[key] = value
    return merged


def load_profile(
    *,
    profile: str | None = None,
    workspace: Path | None = None,
    project_root: Path | None = None,
) -> ProfileContext:
    """Merge the user, project and workspace files and select one profile.

    The profile name comes from *profile*, then ``FRAMEFLEET_PROFILE``, then
    the merged ``default_profile`` key, and finally ``"default"``. A missing
    ``default`` profile resolves to empty settings; any other missing name
    is a :class:`FrameFleetConfigError`.
    """

    merged: dict[str, Any] = {}
    sources: list[Path] = []
    for path in config_paths(workspace=workspace, project_root=project_root):
        if path.is_file():
            merged = _merge(merged, _read(path))
            sources.append(path)

    profiles = merged.get("profiles", {})
    if not isinstance(profiles, Mapping):
        raise FrameFleetConfigError("'profiles' must be a table of profile tables.")

    default = merged.get("default_profile")
    name = (
        profile
        or os.environ.get(PROFILE_ENV)
        or (default if isinstance(default, str) and default else DEFAULT_PROFILE)
    )

    data = profiles.get(name)
    if data is None:
        if name != DEFAULT_PROFILE and profiles:
            available = ", ".join(sorted(str(key) for key in profiles))
            raise FrameFleetConfigError(
                f"Profile '{name}' was not found. Available profiles: {available}."
            )
        data = {}
    if not isinstance(data, Mapping):
        raise FrameFleetConfigError(f"Profile '{name}' must be a table of settings.")

    return ProfileContext(name=name, data=dict(data), sources=tuple(sources))


__all__ = ["CONFIG_FILENAME", "ProfileContext", "config_paths", "load_profile"]
