from __future__ import annotations

from pathlib import Path

from starlette.concurrency import run_in_threadpool

from .media_storage import sanitize_media_filename


# Per-object content types, kept beside the bucket. Key segments never start
# with "." so this cannot collide with an object.
_TYPES_DIR = ".content-types"


def split_media_key(key: str) -> tuple[str, str]:
    """`"{owner}/{name}"` -> (owner, name). Anything else is rejected with ValueError."""
    owner, sep, name = (key or "").partition("/")
    if not sep or not owner or not name:
        raise ValueError(f"invalid media key {key!r}")
    for segment in (owner, name):
        if sanitize_media_filename(segment) != segment:
            raise ValueError(f"invalid media key {key!r}")
    return owner, name


class LocalMediaStorage:
    """Media objects for one bucket under `root_dir/<bucket>/<owner>/<name>`.

    Public URLs point at the devstore's object route, which serves these files.
    """

    def __init__(self, *, root_dir: str, public_base_url: str, bucket: str) -> None:
        self._bucket_dir = Path(root_dir) / bucket
        self._public_base_url = public_base_url.rstrip("/")
        self._bucket = bucket

    @property
    def bucket(self) -> str:
        return self._bucket

    def owner_of(self, key: str) -> str:
        return split_media_key(key)[0]

    def path_for(self, key: str) -> Path:
        owner, name = split_media_key(key)
        return self._bucket_dir / owner / name

    def _type_path(self, key: str) -> Path:
        owner, name = split_media_key(key)
        return self._bucket_dir / _TYPES_DIR / owner / name

    def public_url(self, key: str) -> str:
        split_media_key(key)
        return f"{self._public_base_url}/storage/v1/object/public/{self._bucket}/{key}"

    async def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        path = self.path_for(key)
        type_path = self._type_path(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            partial = path.with_name(f".{path.name}.partial")
            partial.write_bytes(data)
            partial.replace(path)
            if content_type:
                type_path.parent.mkdir(parents=True, exist_ok=True)
                type_path.write_text(content_type, encoding="utf-8")
            else:
                type_path.unlink(missing_ok=True)

        await run_in_threadpool(_write)

    async def get_bytes(self, key: str) -> bytes:
        return await run_in_threadpool(self.path_for(key).read_bytes)

    async def content_type(self, key: str) -> str | None:
        type_path = self._type_path(key)

        def _read() -> str | None:
            try:
                return type_path.read_text(encoding="utf-8").strip() or None
            except FileNotFoundError:
                return None

        return await run_in_threadpool(_read)

    async def delete(self, key: str) -> None:
        path = self.path_for(key)
        type_path = self._type_path(key)

        def _remove() -> None:
            path.unlink(missing_ok=True)
            type_path.unlink(missing_ok=True)

        await run_in_threadpool(_remove)
