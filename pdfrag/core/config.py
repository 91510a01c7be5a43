"""Configuration management for pdfrag."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase configuration (required)
    SUPABASE_URL: str = Field(..., description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(..., description="Supabase service role key")

    # OpenAI configuration (required)
    OPENAI_API_KEY: str = Field(..., description="OpenAI API key")

    # Environment
    PDFRAG_ENV: str = Field(default="dev", description="Environment: dev, test, prod")

    # Embedding configuration
    EMBEDDING_MODEL: str = Field(
        default="text-embedding-3-small", description="OpenAI embedding model"
    )
    EMBEDDING_DIM: int = Field(default=1536, description="Embedding vector dimension")
    EMBEDDING_BATCH_SIZE: int = Field(default=100, description="Texts per embeddings request")
    EMBEDDING_MAX_RETRIES: int = Field(default=3, description="Attempts per failing embedding batch")
    EMBEDDING_RETRY_DELAY_SECONDS: float = Field(
        default=1.0, description="Initial embedding retry delay, doubled each attempt"
    )
    VECTOR_DIM: int = Field(
        default=1536, description="Dimension query vectors are normalized to before search"
    )

    # Generation
    GENERATION_MODEL: str = Field(default="gpt-4o-mini", description="Model for answer generation")

    # Chunking
    CHUNK_SIZE_TOKENS: int = Field(default=600, description="Context chunk size in tokens")
    CHUNK_OVERLAP_TOKENS: int = Field(default=100, description="Context chunk overlap in tokens")
    DETAIL_CHUNK_SIZE: int = Field(default=200, description="Detail chunk size in tokens")
    DETAIL_CHUNK_OVERLAP: int = Field(default=50, description="Detail chunk overlap in tokens")
    TOKENIZER_ENCODING: str = Field(default="cl100k_base", description="tiktoken encoding name")

    # Vector store
    STORE_BATCH_SIZE: int = Field(default=100, description="Chunks written per batch")
    STORE_MAX_RETRIES: int = Field(default=3, description="Retries per failing batch")
    STORE_RETRY_DELAY_SECONDS: float = Field(
        default=1.0, description="Initial retry delay, doubled each attempt"
    )

    # Vector search
    SEARCH_DEFAULT_TOP_K: int = Field(default=10, description="Default number of results")
    SEARCH_MAX_TOP_K: int = Field(default=50, description="Upper bound for top_k")
    SEARCH_SIMILARITY_THRESHOLD: float = Field(
        default=0.65, description="Default minimum cosine similarity"
    )
    SEARCH_RELAXED_THRESHOLD: float = Field(
        default=0.5, description="Threshold used when the first query returns nothing"
    )
    SEARCH_CACHE_TTL_SECONDS: float = Field(default=300.0, description="Search cache TTL")
    SEARCH_CACHE_MAX_ENTRIES: int = Field(default=1000, description="Search cache size cap")
    SEARCH_CACHE_EVICT_COUNT: int = Field(
        default=100, description="Oldest entries evicted when the cap is exceeded"
    )
    SEARCH_DEGRADED_FALLBACK: bool = Field(
        default=True, description="List user chunks with synthetic scores when search fails"
    )

    # Timeouts for external calls
    EMBEDDING_TIMEOUT_SECONDS: float = Field(default=30.0, description="Embedding call timeout")
    SEARCH_TIMEOUT_SECONDS: float = Field(default=15.0, description="Vector query timeout")
    GENERATION_TIMEOUT_SECONDS: float = Field(default=60.0, description="LLM call timeout")
    STORE_TIMEOUT_SECONDS: float = Field(default=30.0, description="Batch write timeout")

    # RAG
    RAG_MAX_CONTEXT_TOKENS: int = Field(default=3000, description="Token budget for context")
    RAG_MAX_SOURCES: int = Field(default=5, description="Max sources per response")
    RAG_MAX_RESPONSE_TOKENS: int = Field(default=1000, description="Max tokens in an answer")
    RAG_TEMPERATURE: float = Field(default=0.7, description="Default generation temperature")
    MAX_FOLLOW_UP_QUESTIONS: int = Field(default=3, description="Follow-up questions returned")
    QUERY_HISTORY_ENABLED: bool = Field(
        default=True, description="Record answered questions in user_queries"
    )

    # Conversation sessions
    SESSION_IDLE_HOURS: float = Field(default=24.0, description="Idle hours before eviction")

    # Backend selection
    VECTOR_BACKEND: str = Field(default="supabase", description="Vector backend: supabase, memory")


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance loaded from environment
    """
    return Settings()
