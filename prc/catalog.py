from __future__ import annotations

import json
import os
from typing import Any

from .settings import settings


class FilesystemCatalog:
    """Service sources laid out as ``<root>/<service>/`` checkouts."""

    def __init__(self, root: str | None = None):
        self.root = os.path.abspath(root or settings.source_root)

    def path_for(self, name: str) -> str:
        return os.path.join(self.root, name)

    def status(self, name: str) -> dict[str, Any]:
        path = self.path_for(name)
        exists = os.path.isdir(path) and os.path.isfile(os.path.join(path, "Dockerfile"))
        return {"exists": exists, "path": path if exists else None}


def load_dependencies(path: str | None = None) -> dict[str, list[str]]:
    """Read the build dependency map (JSON object: service -> [dependencies]).

    No file configured means no services are known.
    """
    path = path or settings.dependencies_file
    if not path:
        return {}
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object of service -> [dependencies].")
    out: dict[str, list[str]] = {}
    for name, deps in data.items():
        if not isinstance(deps, list) or not all(isinstance(d, str) for d in deps):
            raise ValueError(f"{path}: dependencies of '{name}' must be a list of service names.")
        out[str(name)] = deps
    return out
