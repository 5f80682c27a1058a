"""
Configuration module for the docflow daemons.

This module centralizes the loading and validation of all configuration
parameters from environment variables. It provides a single `Settings`
class that acts as a container for all configurable values, ensuring
that they are defined in one place and can be easily imported and used
throughout the application.
"""

import os
from typing import Literal

import openai
from PIL import Image

DEFAULT_OPENAI_MODELS = ["gpt-5-mini", "o4-mini"]
DEFAULT_OLLAMA_MODELS = ["gemma3:27b", "gemma3:12b"]
DEFAULT_CLASSIFY_LABELS = ["APPLICATION", "PAYSLIP", "BANK"]


class Settings:
    """
    A container for all configuration settings, loaded from environment variables.

    This class centralizes configuration, providing default values for optional
    settings and raising errors for missing required settings.
    """

    # --- Redis (queues + workflow substrate) ---
    REDIS_URL: str

    # --- Object storage ---
    OBJECT_STORE_URL: str
    OBJECT_STORE_TOKEN: str | None
    OUTPUT_BUCKET: str
    TOKEN_NAMESPACE: str

    # --- Extraction service ---
    EXTRACTION_URL: str
    EXTRACTION_TOKEN: str | None
    EXTRACTION_OUTPUT_PREFIX: str
    NOTIFICATION_TARGET: str
    NOTIFICATION_ROLE: str

    # --- LLM Provider Configuration ---
    LLM_PROVIDER: Literal["openai", "ollama"]
    OLLAMA_BASE_URL: str | None
    OPENAI_API_KEY: str | None
    AI_MODELS: list[str]
    CLASSIFY_LABELS: list[str]
    OCR_MAX_SIDE: int
    REQUEST_TIMEOUT: int

    # --- Queues and daemons ---
    UPLOAD_QUEUE: str
    NOTIFICATION_QUEUE: str
    QUEUE_BATCH_SIZE: int
    POLL_INTERVAL: int
    WORKFLOW_WORKERS: int
    COMPLETION_WORKERS: int

    # --- Concurrency ceilings and workflow policy ---
    CLASSIFY_CONCURRENCY: int
    DISPATCH_CONCURRENCY: int
    SUSPEND_TIMEOUT_SECONDS: int
    STAGE_MAX_ATTEMPTS: int
    MAX_RETRY_BACKOFF_SECONDS: int

    # --- Logging ---
    LOG_LEVEL: str
    LOG_FORMAT: Literal["console", "json"]

    def __init__(self):
        """
        Loads settings from environment variables and performs validation.
        """
        self.REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

        # --- Object storage ---
        self.OBJECT_STORE_URL = self._get_required_env("OBJECT_STORE_URL").rstrip("/")
        self.OBJECT_STORE_TOKEN = os.getenv("OBJECT_STORE_TOKEN") or None
        self.OUTPUT_BUCKET = self._get_required_env("OUTPUT_BUCKET")
        self.TOKEN_NAMESPACE = os.getenv("TOKEN_NAMESPACE", "_tasks").strip("/")
        if not self.TOKEN_NAMESPACE:
            raise ValueError("TOKEN_NAMESPACE must not be empty")

        # --- Extraction service ---
        self.EXTRACTION_URL = self._get_required_env("EXTRACTION_URL").rstrip("/")
        self.EXTRACTION_TOKEN = os.getenv("EXTRACTION_TOKEN") or None
        self.EXTRACTION_OUTPUT_PREFIX = os.getenv(
            "EXTRACTION_OUTPUT_PREFIX", "_detectText"
        )
        self.NOTIFICATION_TARGET = self._get_required_env("NOTIFICATION_TARGET")
        self.NOTIFICATION_ROLE = self._get_required_env("NOTIFICATION_ROLE")

        # --- LLM Provider Configuration ---
        self.LLM_PROVIDER = os.getenv("LLM_PROVIDER", "openai")
        if self.LLM_PROVIDER not in ("openai", "ollama"):
            raise ValueError("LLM_PROVIDER must be 'openai' or 'ollama'")

        if self.LLM_PROVIDER == "ollama":
            self.OLLAMA_BASE_URL = os.getenv(
                "OLLAMA_BASE_URL", "http://localhost:11434/v1/"
            )
            self.OPENAI_API_KEY = None  # Not used for Ollama
            default_models = DEFAULT_OLLAMA_MODELS
        else:  # openai
            self.OLLAMA_BASE_URL = None
            self.OPENAI_API_KEY = self._get_required_env("OPENAI_API_KEY")
            default_models = DEFAULT_OPENAI_MODELS

        self.AI_MODELS = _parse_list(os.getenv("AI_MODELS")) or list(default_models)
        self.CLASSIFY_LABELS = [
            label.upper() for label in _parse_list(os.getenv("CLASSIFY_LABELS"))
        ] or list(DEFAULT_CLASSIFY_LABELS)
        self.OCR_MAX_SIDE = int(os.getenv("OCR_MAX_SIDE", 1600))
        self.REQUEST_TIMEOUT = int(os.getenv("REQUEST_TIMEOUT", 180))

        # --- Queues and daemons ---
        self.UPLOAD_QUEUE = os.getenv("UPLOAD_QUEUE", "docflow:uploads")
        self.NOTIFICATION_QUEUE = os.getenv(
            "NOTIFICATION_QUEUE", "docflow:notifications"
        )
        self.QUEUE_BATCH_SIZE = max(1, int(os.getenv("QUEUE_BATCH_SIZE", 10)))
        self.POLL_INTERVAL = max(1, int(os.getenv("POLL_INTERVAL", 15)))
        self.WORKFLOW_WORKERS = max(1, int(os.getenv("WORKFLOW_WORKERS", 10)))
        self.COMPLETION_WORKERS = max(1, int(os.getenv("COMPLETION_WORKERS", 4)))

        # --- Concurrency ceilings and workflow policy ---
        self.CLASSIFY_CONCURRENCY = max(1, int(os.getenv("CLASSIFY_CONCURRENCY", 10)))
        self.DISPATCH_CONCURRENCY = max(1, int(os.getenv("DISPATCH_CONCURRENCY", 10)))
        self.SUSPEND_TIMEOUT_SECONDS = int(os.getenv("SUSPEND_TIMEOUT_SECONDS", 86400))
        if self.SUSPEND_TIMEOUT_SECONDS <= 0:
            raise ValueError("SUSPEND_TIMEOUT_SECONDS must be positive")
        self.STAGE_MAX_ATTEMPTS = int(os.getenv("STAGE_MAX_ATTEMPTS", 3))
        self.MAX_RETRY_BACKOFF_SECONDS = int(os.getenv("MAX_RETRY_BACKOFF_SECONDS", 30))

        # --- Logging ---
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_FORMAT = os.getenv("LOG_FORMAT", "console").lower()
        if self.LOG_FORMAT not in ("console", "json"):
            raise ValueError("LOG_FORMAT must be 'console' or 'json'")

    def _get_required_env(self, var_name: str) -> str:
        """
        Gets a required environment variable, raising an error if it's not set.
        """
        value = os.getenv(var_name)
        if value is None:
            raise ValueError(f"Required environment variable '{var_name}' is not set.")
        return value


def _parse_list(raw: str | None) -> list[str]:
    """Split a comma-separated environment value, dropping blanks."""
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def setup_libraries(settings: Settings) -> None:
    """
    Configures third-party libraries based on the application settings.
    """
    # Disable Pillow's safety check that prevents huge images
    Image.MAX_IMAGE_PIXELS = None

    # Configure OpenAI SDK
    if settings.LLM_PROVIDER == "ollama":
        openai.base_url = settings.OLLAMA_BASE_URL
        openai.api_key = "dummy"
    else:
        openai.api_key = settings.OPENAI_API_KEY
