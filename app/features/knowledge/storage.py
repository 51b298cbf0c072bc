"""
Knowledge feature: blob storage for uploaded documents (Supabase Storage).
"""

import posixpath
from typing import Protocol

from supabase import AsyncClient


class BlobStore(Protocol):
    async def put(self, key: str, data: bytes, content_type: str) -> None: ...

    async def get(self, key: str) -> bytes | None: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...


def source_object_key(agent_id: str, source_id: str, file_name: str) -> str:
    """Storage path: agents/{agent_id}/sources/{source_id}/{file_name}"""
    return f"agents/{agent_id}/sources/{source_id}/{file_name}"


class SupabaseBlobStore:
    """BlobStore backed by one private Supabase Storage bucket."""

    def __init__(self, db: AsyncClient, bucket: str):
        self.db = db
        self.bucket = bucket

    def _bucket(self):
        return self.db.storage.from_(self.bucket)

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        await self._bucket().upload(
            path=key,
            file=data,
            file_options={"content-type": content_type, "upsert": "true"},
        )

    async def get(self, key: str) -> bytes | None:
        if not await self.exists(key):
            return None
        return await self._bucket().download(key)

    async def delete(self, key: str) -> None:
        await self._bucket().remove([key])

    async def exists(self, key: str) -> bool:
        folder, name = posixpath.split(key)
        entries = await self._bucket().list(folder, {"search": name})
        return any(entry.get("name") == name for entry in entries or [])
