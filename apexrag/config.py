"""Application configuration settings.

This module defines the Settings dataclass that loads configuration
from environment variables.
"""

from dataclasses import dataclass
import os

from apexrag.errors import InvalidConfigurationError


@dataclass
class Settings:
    """Application settings loaded from environment variables.

    Attributes:
        ibm_cloud_api_key: IBM Cloud API key for authentication.
        watsonx_region: Watsonx.ai service region.
        watsonx_project_id: Watsonx.ai project ID.
        watsonx_gen_model: Chat model ID used for answer generation.
        chunk_size: Fragment size in characters.
        chunk_overlap: Characters shared by consecutive fragments.
        top_k: Number of fragments retrieved per question.
        history_window: Number of trailing turns sent with each question.
        max_new_tokens: Generation length limit.
        strict_mode: Answer only from retrieved context by default.
        use_search: Enable the web search tool by default (hybrid mode only).
        history_dir: Directory of the JSON key-value store for sessions.
        log_level: Root logging level.
    """

    ibm_cloud_api_key: str
    watsonx_region: str
    watsonx_project_id: str
    watsonx_gen_model: str

    chunk_size: int
    chunk_overlap: int
    top_k: int
    history_window: int
    max_new_tokens: int

    strict_mode: bool
    use_search: bool

    history_dir: str
    log_level: str

    @staticmethod
    def _get_bool(value: str | None, default: bool = False) -> bool:
        """Convert string value to boolean.

        Args:
            value: String value to convert.
            default: Default value if value is None.

        Returns:
            Boolean value.
        """
        if value is None:
            return default
        return value.lower() in {"1", "true", "t", "yes", "y"}

    @classmethod
    def from_env(cls) -> "Settings":
        """Create Settings instance from environment variables.

        Returns:
            Settings instance with values loaded from environment.
        """
        return cls(
            ibm_cloud_api_key=os.getenv("IBM_CLOUD_API_KEY", ""),
            watsonx_region=os.getenv("WATSONX_REGION", "us-south"),
            watsonx_project_id=os.getenv("WATSONX_PROJECT_ID", ""),
            watsonx_gen_model=os.getenv(
                "WATSONX_GEN_MODEL", "ibm/granite-3-8b-instruct"
            ),
            chunk_size=int(os.getenv("CHUNK_SIZE", "1000")),
            chunk_overlap=int(os.getenv("CHUNK_OVERLAP", "200")),
            top_k=int(os.getenv("TOP_K", "4")),
            history_window=int(os.getenv("HISTORY_WINDOW", "6")),
            max_new_tokens=int(os.getenv("MAX_NEW_TOKENS", "2048")),
            strict_mode=cls._get_bool(os.getenv("STRICT_MODE"), True),
            use_search=cls._get_bool(os.getenv("USE_SEARCH"), False),
            history_dir=os.getenv("HISTORY_DIR", "data/history"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    def validate(self) -> "Settings":
        """Reject chunking settings that cannot cover a document.

        Returns:
            The same settings, for chaining.

        Raises:
            InvalidConfigurationError: If the overlap is not smaller than
                the chunk size.
        """
        if self.chunk_overlap >= self.chunk_size:
            raise InvalidConfigurationError(
                f"CHUNK_OVERLAP ({self.chunk_overlap}) must be smaller than "
                f"CHUNK_SIZE ({self.chunk_size})"
            )
        return self
