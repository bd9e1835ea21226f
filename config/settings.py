from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings


_PROJECT_ROOT = Path(__file__).resolve().parent.parent


class AppSettings(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Paths
    project_root: Path = _PROJECT_ROOT
    families_path: Path = _PROJECT_ROOT / "data" / "plantFamilies.json"
    artifacts_dir: Path = _PROJECT_ROOT / "storage" / "data"

    # Precomputed artifacts: a directory, file:// URL or http(s):// base URL
    artifacts_base: str = str(_PROJECT_ROOT / "storage" / "data")
    traits_artifact: str = "precomputedTraits.json"
    embeddings_artifact: str = "precomputedEmbeddings.bin"

    # Embedding model (local weights only, never fetched from a hub)
    embedding_model_path: Path = _PROJECT_ROOT / "storage" / "models" / "bge-small-zh-v1.5"
    embedding_device: str = "cpu"
    embedding_dims: int = 512
    embedding_batch_size: int = 100

    # Artifact fetching
    fetch_retries: int = 3
    fetch_backoff_seconds: float = 1.0

    # Corpus embedding cache (on-demand corpora only)
    corpus_cache_size: int = 4

    # Matching policy
    identifier_min_score: float = 0.3
    quiz_min_score: float = 0.4

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"  # "json" or "text"
    log_file: str = ""  # empty = storage/logs/trait_matcher.log


settings = AppSettings()
