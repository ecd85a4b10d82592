"""
Explicit dependency container handed to workers and clients.

Nothing in the pipeline reads global state: the store, the object store and
the provider adapters all arrive through a Services instance.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from pitchinsight.core.analyze_llm import ChatCompletionAnalyzer, TextAnalysisProvider
from pitchinsight.core.change_feed import ChangeFeed
from pitchinsight.core.config import AppConfig
from pitchinsight.core.constants import StorageBackend
from pitchinsight.core.db_sqlite import Database
from pitchinsight.core.error_codes import ConfigurationError
from pitchinsight.core.fetch_media import fetch_media
from pitchinsight.core.object_store import LocalObjectStore, ObjectStore, S3ObjectStore
from pitchinsight.core.task_queue import InlineDispatcher, ThreadDispatcher
from pitchinsight.core.transcribe_whisper import SpeechToTextProvider, WhisperTranscriber

logger = logging.getLogger(__name__)


@dataclass
class Services:
    db: Database
    object_store: ObjectStore
    transcriber: SpeechToTextProvider
    analyzer: TextAnalysisProvider
    config: AppConfig
    change_feed: ChangeFeed = field(default_factory=ChangeFeed)
    fetch: Callable[..., bytes] = fetch_media
    dispatcher: object = field(default_factory=InlineDispatcher)

    def close(self):
        self.db.close()


def build_object_store(config: AppConfig) -> ObjectStore:
    backend = config.get('storage_backend')
    if backend == StorageBackend.S3:
        bucket = config.get('storage_bucket')
        if not bucket:
            raise ConfigurationError("storage_bucket is required for the s3 backend")
        return S3ObjectStore(
            bucket=bucket,
            endpoint_url=config.get('s3_endpoint_url'),
            access_key=config.get('s3_access_key'),
            secret_key=config.get('s3_secret_key'),
            public_base_url=config.get('s3_public_base_url'),
        )

    public = bool(config.get('storage_public'))
    secret = config.get('signing_secret')
    if not public and not secret:
        raise ConfigurationError(
            "PITCHINSIGHT_SIGNING_SECRET is required for a private local store")
    return LocalObjectStore(
        root=Path(config.get('storage_root')),
        base_url=config.get('public_base_url'),
        signing_secret=secret,
        bucket=config.get('storage_bucket'),
        public=public,
    )


def build_services(config: AppConfig | None = None, threaded: bool = True) -> Services:
    """
    Wire real adapters from configuration. Raises ConfigurationError before
    any work starts if credentials are missing.
    """
    config = config or AppConfig()
    api_key = config.openai_api_key
    if not api_key:
        raise ConfigurationError("OPENAI_API_KEY is not set")

    object_store = build_object_store(config)
    feed = ChangeFeed()
    db = Database(config.db_path, change_feed=feed)
    timeout = config.get('provider_timeout_sec')

    logger.info("Services ready (db=%s, storage=%s)", config.db_path,
                config.get('storage_backend'))
    return Services(
        db=db,
        object_store=object_store,
        transcriber=WhisperTranscriber(api_key, model=config.get('transcription_model'),
                                       timeout=timeout),
        analyzer=ChatCompletionAnalyzer(api_key, model=config.get('analysis_model'),
                                        timeout=timeout),
        config=config,
        change_feed=feed,
        dispatcher=ThreadDispatcher() if threaded else InlineDispatcher(),
    )
