"""
Static asset loading for the gateway's web page.
"""

from __future__ import annotations

from pathlib import Path
from typing import Union

from roku_errors import AssetNotFound, PathTraversalRejected
from roku_http import content_type_for

DEFAULT_STATIC_DIR = Path(__file__).parent / "static"


class StaticAssets:
    """Serves files from one directory. `/` maps to the index page."""

    def __init__(self, root: Union[str, Path] = DEFAULT_STATIC_DIR, index: str = "index.html") -> None:
        self.root = Path(root).resolve()
        self.index = index

    def load(self, path: str) -> tuple[bytes, str]:
        """Return (content, content type) for a request path."""
        if ".." in path:
            raise PathTraversalRejected(f"Parent directory segment in path: {path}")
        relative = path.lstrip("/") or self.index
        try:
            # Embedded NUL bytes make the filesystem calls raise ValueError
            target = (self.root / relative).resolve()
            found = target.is_file()
        except (ValueError, OSError):
            raise AssetNotFound(f"Not found: {path}") from None
        try:
            target.relative_to(self.root)
        except ValueError:
            raise PathTraversalRejected(f"Path escapes static directory: {path}") from None
        if not found:
            raise AssetNotFound(f"Not found: {path}")
        try:
            data = target.read_bytes()
        except OSError as e:
            raise AssetNotFound(f"Not found: {path}") from e
        return data, content_type_for(target.name)
