"""Security utilities: confine local media paths to an allowed directory."""

from pathlib import Path


def resolve_media_path(path: str, allowed_dir: Path | None) -> Path:
    """Resolve a local media path, refusing anything outside allowed_dir.

    Local paths are disabled entirely when no allowed_dir is configured.
    """
    if allowed_dir is None:
        raise PermissionError("Local media paths are disabled (media.local_root is not set)")
    resolved = Path(path).expanduser().resolve()
    allowed = allowed_dir.expanduser().resolve()
    try:
        resolved.relative_to(allowed)
    except ValueError as e:
        raise PermissionError(f"Path {path} is outside allowed directory {allowed}") from e
    if not resolved.is_file():
        raise FileNotFoundError(f"Media file not found: {path}")
    return resolved
