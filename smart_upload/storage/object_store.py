from __future__ import annotations

import os
from pathlib import Path
from typing import Protocol
from uuid import uuid4


class ObjectStorage(Protocol):
    def download(self, key: str) -> bytes: ...

    def upload(self, data: bytes, key: str) -> str: ...


def build_source_key(*, batch_id: str, item_id: str, file_name: str) -> str:
    return f"smart-upload/{batch_id}/{item_id}/source/{_safe_name(file_name)}"


def build_part_key(*, batch_id: str, item_id: str, slug: str) -> str:
    return f"smart-upload/{batch_id}/{item_id}/parts/{slug}.pdf"


class LocalObjectStorage:
    """Object storage backed by a directory tree.

    Keys are relative ``/``-separated paths. Writes go through a temporary
    file and ``os.replace`` so a reader never sees a half-written object.
    """

    def __init__(self, root_dir: Path | str) -> None:
        self.root_dir = Path(root_dir).resolve()

    def path_for(self, key: str) -> Path:
        if not key or key.startswith("/") or "\\" in key:
            raise ValueError(f"Invalid storage key: {key!r}")

        path = (self.root_dir / key).resolve()
        if not path.is_relative_to(self.root_dir):
            raise ValueError(f"Storage key escapes storage root: {key!r}")
        return path

    def download(self, key: str) -> bytes:
        path = self.path_for(key)
        if not path.is_file():
            raise FileNotFoundError(f"Object not found: {key}")
        return path.read_bytes()

    def upload(self, data: bytes, key: str) -> str:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)

        tmp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
        try:
            tmp_path.write_bytes(data)
            os.replace(tmp_path, path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
        return key

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()


def _safe_name(file_name: str) -> str:
    name = Path(file_name.replace("\\", "/")).name.strip()
    if name in {"", ".", ".."}:
        return "upload.bin"
    return name
