"""
Knowledge feature: vector index access.

`VectorizeIndex` talks to the Cloudflare Vectorize v2 REST API:
  insert        POST /accounts/{account}/vectorize/v2/indexes/{name}/insert  (NDJSON body)
  delete_by_ids POST /accounts/{account}/vectorize/v2/indexes/{name}/delete_by_ids
  describe      GET  /accounts/{account}/vectorize/v2/indexes/{name}/info

Writes are asynchronous on the index side: each returns a mutation id that
`describe().processed_up_to_mutation` eventually catches up with.
"""

import asyncio
import json
import logging
import time
from typing import Protocol

import httpx

from app.features.knowledge.schemas import IndexDescription, MutationResult, VectorRecord

logger = logging.getLogger(__name__)


class VectorIndex(Protocol):
    async def insert(self, records: list[VectorRecord]) -> MutationResult: ...

    async def delete_by_ids(self, ids: list[str]) -> MutationResult: ...

    async def describe(self) -> IndexDescription: ...


class VectorizeIndex:
    """Async client for one Vectorize index."""

    def __init__(
        self,
        account_id: str,
        index_name: str,
        api_token: str,
        base_url: str = "https://api.cloudflare.com/client/v4",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.index_name = index_name
        self.url = f"{base_url.rstrip('/')}/accounts/{account_id}/vectorize/v2/indexes/{index_name}"
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_token}"},
        )

    async def insert(self, records: list[VectorRecord]) -> MutationResult:
        body = "\n".join(
            json.dumps(record.model_dump(), separators=(",", ":")) for record in records
        )
        response = await self._client.post(
            f"{self.url}/insert",
            content=body.encode("utf-8"),
            headers={"Content-Type": "application/x-ndjson"},
        )
        return MutationResult(mutation_id=self._result(response).get("mutationId"))

    async def delete_by_ids(self, ids: list[str]) -> MutationResult:
        response = await self._client.post(f"{self.url}/delete_by_ids", json={"ids": ids})
        return MutationResult(mutation_id=self._result(response).get("mutationId"))

    async def describe(self) -> IndexDescription:
        response = await self._client.get(f"{self.url}/info")
        result = self._result(response)
        return IndexDescription(
            dimensions=result.get("dimensions", 0),
            vector_count=result.get("vectorCount", 0),
            processed_up_to_mutation=result.get("processedUpToMutation"),
        )

    @staticmethod
    def _result(response: httpx.Response) -> dict:
        """Extract 'result' from a Cloudflare API envelope."""
        response.raise_for_status()
        body = response.json()
        if not body.get("success", True):
            raise RuntimeError(f"Vectorize request failed: {body.get('errors')}")
        return body.get("result") or {}

    async def close(self):
        await self._client.aclose()


def mutation_processed(processed_up_to: str | None, mutation_id: str) -> bool:
    if processed_up_to is None:
        return False
    if processed_up_to == mutation_id:
        return True
    # Legacy indexes report monotonically increasing numeric ids
    if processed_up_to.isdigit() and mutation_id.isdigit():
        return int(processed_up_to) >= int(mutation_id)
    return False


async def wait_for_mutation(
    index: VectorIndex,
    mutation_id: str,
    max_wait: float = 30.0,
    poll_interval: float = 1.0,
) -> None:
    """Poll the index until `mutation_id` has been applied.

    Raises:
        TimeoutError: The mutation was not applied within `max_wait` seconds.
    """
    deadline = time.monotonic() + max_wait
    while time.monotonic() < deadline:
        try:
            description = await index.describe()
            if mutation_processed(description.processed_up_to_mutation, mutation_id):
                logger.info(f"✅ Mutation {mutation_id} processed")
                return
        except Exception as e:
            logger.warning(f"⚠️ Error checking mutation status: {e}")
        await asyncio.sleep(poll_interval)

    raise TimeoutError(f"Mutation {mutation_id} did not complete within {max_wait}s")


async def check_index_health(index: VectorIndex) -> dict:
    """Describe the index, reporting failures as an error status instead of raising."""
    try:
        description = await index.describe()
    except Exception as e:
        logger.error(f"❌ Vector index health check failed: {e}")
        return {"status": "error", "message": str(e)}

    return {
        "status": "healthy",
        "dimensions": description.dimensions,
        "vector_count": description.vector_count,
        "processed_up_to_mutation": description.processed_up_to_mutation,
    }
