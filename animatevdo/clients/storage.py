"""Supabase Storage uploader for generated media."""

import httpx

from animatevdo.clients.base import ObjectStorage, ProviderClient


class SupabaseStorage(ProviderClient, ObjectStorage):
    """Uploads objects to a public Supabase Storage bucket.

    Returns the public URL of the uploaded object. Existing objects at the
    same path are overwritten (``x-upsert``).
    """

    provider = "Storage"

    def __init__(
        self,
        supabase_url: str,
        service_key: str | None,
        bucket: str,
        *,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(service_key, timeout=timeout, transport=transport)
        self.base_url = supabase_url.rstrip("/")
        self.bucket = bucket

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "x-upsert": "true"}

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{path}"

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        await self._request(
            "POST",
            f"{self.base_url}/storage/v1/object/{self.bucket}/{path}",
            content=data,
            headers={"Content-Type": content_type},
        )
        return self.public_url(path)
