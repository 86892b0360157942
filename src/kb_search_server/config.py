from typing import Literal, Optional

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Embedding provider (Google Generative Language API)
    embedding_api_key: Optional[SecretStr] = None
    embedding_model: str = "text-embedding-004"
    embedding_dimensions: int = 768
    embedding_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    embedding_timeout: float = 30.0

    # Retrieval
    distance_measure: Literal["cosine", "euclidean"] = "cosine"
    retrieval_strategy: Literal["tiered", "flat"] = "tiered"
    default_cosine_threshold: float = 0.85
    default_euclidean_threshold: float = 1.3
    max_euclidean_threshold: float = 100.0
    candidate_multiplier: int = 4
    default_search_limit: int = 5
    search_timeout_seconds: float = 20.0
    relevance_cache_ttl: float = 30.0

    # Retries for transient provider errors (embedding + index query only)
    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0

    # Storage backends
    vector_backend: Literal["faiss", "pgvector"] = "faiss"
    vector_index_path: str = "/app/data/kb_index.bin"
    vector_meta_path: str = "/app/data/kb_meta.json"
    relevance_config_path: str = "/app/data/relevance.json"
    database_url: str = "postgresql+asyncpg://kb:kb@localhost:5432/kb"
    delete_batch_size: int = 400
    # A "processing" claim older than this is treated as abandoned
    processing_lease_seconds: float = 900.0

    # Optional external id-only vector index
    remote_index_url: Optional[str] = None
    remote_index_token: Optional[SecretStr] = None
    remote_index_deployed_id: Optional[str] = None
    remote_index_reports_similarity: bool = False

    # Indexing
    chunk_size: int = 1500
    chunk_overlap: int = 150

    # Admin surface
    admin_api_key: Optional[SecretStr] = None

    # Chat model (OpenAI-compatible chat completions)
    llm_api_key: Optional[SecretStr] = None
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1/chat/completions"

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore"
    )

settings = Settings()
