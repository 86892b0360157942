"""
Embedding Client

This module implements the embedding client used at both indexing time
(documents) and query time (queries). It calls the Google Generative Language
``batchEmbedContents`` endpoint (or any compatible provider) and is
responsible for:

- Batching of text inputs
- Task hints (RETRIEVAL_DOCUMENT vs RETRIEVAL_QUERY)
- Classifying transport, auth and quota errors
- Strict response validation, including vector dimensionality

Callers pass text that has already been normalized.
The class is stateless and safe to reuse across requests.
"""

from __future__ import annotations

from typing import Any, Dict, List, Sequence, Optional
import logging
import httpx

from .models import TaskType
from ..config import settings
from ..core.errors import EmbeddingError, ConfigurationError
from ..core.retry import RetryPolicy

logger = logging.getLogger("kb.embedder")

SELF_TEST_SENTENCE = "This is a simple test sentence."


class Embedder:
    """
    Asynchronous embedding generator.

    This class performs no caching and assumes the caller handles
    persistent index management.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize an Embedder.

        Parameters
        ----------
        api_key : Optional[str]
            Override for the provider API key. Defaults to settings.embedding_api_key.

        model : Optional[str]
            Override for the embedding model. Defaults to settings.embedding_model.

        dimensions : Optional[int]
            Expected vector length. Vectors of any other length are rejected.

        base_url : Optional[str]
            Base URL of the provider API.

        timeout : Optional[float]
            HTTP timeout for each request.

        transport : Optional[httpx.AsyncBaseTransport]
            Custom transport, mainly for tests.
        """
        if api_key is None and settings.embedding_api_key is not None:
            api_key = settings.embedding_api_key.get_secret_value()
        self.api_key = api_key
        self.model = model or settings.embedding_model
        self.dimensions = dimensions or settings.embedding_dimensions
        self.base_url = (base_url or settings.embedding_base_url).rstrip("/")
        self.timeout = timeout or settings.embedding_timeout
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self._transport = transport

    @property
    def model_name(self) -> str:
        return self.model

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def embed(self, text: str, task_type: TaskType) -> List[float]:
        """
        Embed a single text.

        Raises
        ------
        EmbeddingError
            If the provider fails or returns an unusable vector.
        """
        vectors = await self.embed_many([text], task_type)
        return vectors[0]

    async def embed_many(
        self,
        texts: Sequence[str],
        task_type: TaskType,
        batch_size: int = 100,
    ) -> List[List[float]]:
        """
        Generate embeddings for a sequence of input texts.

        Parameters
        ----------
        texts : Sequence[str]
            Input strings, already normalized.

        task_type : TaskType
            Provider hint for document vs query embeddings.

        batch_size : int
            Maximum batch size per request (provider limit is 100).

        Returns
        -------
        List[List[float]]
            One vector per input, in input order.

        Raises
        ------
        EmbeddingError
            If any batch fails or the response is malformed.
        """
        if not texts:
            return []

        if not self.api_key:
            raise ConfigurationError(
                "Embedding API key is not configured.",
                setting="embedding_api_key",
            )

        all_embeddings: List[List[float]] = []

        async with httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            for start in range(0, len(texts), batch_size):
                batch = list(texts[start : start + batch_size])
                embeddings = await self.retry_policy.call(
                    "embedding request",
                    lambda: self._request_batch(client, batch, task_type),
                )
                all_embeddings.extend(embeddings)

        return all_embeddings

    async def self_test(self) -> Dict[str, Any]:
        """
        Embed a fixed sentence and report whether the provider is usable.

        Never raises; returns ``{"success": bool, ...}`` for diagnostics.
        """
        try:
            vector = await self.embed(SELF_TEST_SENTENCE, TaskType.RETRIEVAL_DOCUMENT)
        except ConfigurationError as exc:
            return {"success": False, "error": f"Missing setting: {exc.setting}"}
        except EmbeddingError as exc:
            return {"success": False, "error": str(exc)}
        return {"success": True, "embedding_vector_length": len(vector)}

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request_batch(
        self,
        client: httpx.AsyncClient,
        batch: List[str],
        task_type: TaskType,
    ) -> List[List[float]]:
        url = f"{self.base_url}/models/{self.model}:batchEmbedContents"
        payload = {
            "requests": [
                {
                    "model": f"models/{self.model}",
                    "content": {"parts": [{"text": text}]},
                    "taskType": task_type.value,
                }
                for text in batch
            ]
        }

        try:
            response = await client.post(
                url,
                json=payload,
                headers={"x-goog-api-key": self.api_key},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            logger.error(
                "Embedding request rejected (HTTP %d): batch size=%d",
                status_code,
                len(batch),
            )
            if status_code in (401, 403):
                raise EmbeddingError(
                    "Embedding provider rejected the credentials."
                ) from exc
            raise EmbeddingError(
                f"Embedding provider returned HTTP {status_code}.",
                transient=status_code == 429 or status_code >= 500,
            ) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "Embedding request failed (%s): batch size=%d, error=%s",
                type(exc).__name__,
                len(batch),
                str(exc),
            )
            raise EmbeddingError(
                f"Embedding generation failed: {type(exc).__name__}",
                transient=True,
            ) from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise EmbeddingError("Embedding response is not valid JSON.") from exc

        embeddings = self._extract_embeddings(data, self.dimensions)
        if len(embeddings) != len(batch):
            raise EmbeddingError(
                f"Expected {len(batch)} embeddings, provider returned {len(embeddings)}."
            )
        return embeddings

    @staticmethod
    def _extract_embeddings(data: Any, dimensions: int) -> List[List[float]]:
        """
        Parse and validate embedding output format.

        The provider returns:
            { "embeddings": [ {"values": [...]}, ... ] }

        Raises
        ------
        EmbeddingError
            If the API returns unexpected structure or dimensionality.
        """
        if not isinstance(data, dict) or "embeddings" not in data:
            raise EmbeddingError("Embedding response missing 'embeddings' field.")

        records = data["embeddings"]
        if not isinstance(records, list):
            raise EmbeddingError("'embeddings' field must be a list.")

        embeddings: List[List[float]] = []

        for index, record in enumerate(records):
            if not isinstance(record, dict) or "values" not in record:
                raise EmbeddingError(
                    f"Malformed embedding record at index {index}."
                )

            emb = record["values"]
            if not isinstance(emb, list) or not all(
                isinstance(x, (float, int)) for x in emb
            ):
                raise EmbeddingError(
                    f"Invalid embedding vector at index {index}: must be float list."
                )

            if not emb:
                raise EmbeddingError(f"Empty embedding vector at index {index}.")

            if len(emb) != dimensions:
                raise EmbeddingError(
                    f"Embedding at index {index} has {len(emb)} dimensions, "
                    f"expected {dimensions}."
                )

            embeddings.append([float(x) for x in emb])

        return embeddings
