import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .backends import StorageRegistry, build_backends
from .cleanup import CleanupScheduler
from .config import db_path, ensure_directories, load_config, uploads_dir
from .ingest import Normalizer, URLFetcher
from .keys import APIKeyService, LoggingNotifier, Notifier, SMTPNotifier
from .pastes import PasteManager
from .ratelimit import RateLimiter
from .retention import RetentionPolicy
from .shortlinks import ClickTracker, ShortlinkManager
from .storage import MetadataStore


@dataclass
class Services:
    """Everything a request handler needs, wired from one config dict."""

    config: Dict[str, Any]
    store: MetadataStore
    backends: StorageRegistry
    policy: RetentionPolicy
    normalizer: Normalizer
    pastes: PasteManager
    shortlinks: ShortlinkManager
    clicks: ClickTracker
    limiter: RateLimiter
    keys: APIKeyService
    cleanup: CleanupScheduler

    def shutdown(self, wait: bool = False) -> None:
        self.cleanup.shutdown(wait=wait)
        self.clicks.shutdown(wait=wait)


def build_services(
    config: Optional[Dict[str, Any]] = None,
    *,
    clock: Callable[[], float] = time.time,
    notifier: Optional[Notifier] = None,
    fetcher: Optional[URLFetcher] = None,
    backends: Optional[StorageRegistry] = None,
) -> Services:
    ensure_directories()
    config = config if config is not None else load_config()

    store = MetadataStore(db_path())
    store.init_db()
    backends = backends or build_backends(config, uploads_dir())
    policy = RetentionPolicy(config)
    list_limits = {
        "list_default_limit": int(config["list_default_limit"]),
        "list_max_limit": int(config["list_max_limit"]),
    }

    pastes = PasteManager(
        store,
        backends,
        policy,
        clock=clock,
        id_length=int(config["id_length"]),
        delete_key_length=int(config["delete_key_length"]),
        **list_limits,
    )
    shortlinks = ShortlinkManager(
        store,
        policy,
        clock=clock,
        id_length=int(config["id_length"]),
        **list_limits,
    )
    limiter = RateLimiter(
        int(config["rate_limit_requests"]),
        int(config["rate_limit_window_seconds"]),
        namespace="mutations",
    )
    key_request_limiter = RateLimiter(
        int(config["api_key_request_limit"]),
        int(config["api_key_request_window_seconds"]),
        namespace="api_key_requests",
    )
    if notifier is None:
        notifier = SMTPNotifier.from_env(config["base_url"]) or LoggingNotifier(config["base_url"])

    return Services(
        config=config,
        store=store,
        backends=backends,
        policy=policy,
        normalizer=Normalizer(config, fetcher),
        pastes=pastes,
        shortlinks=shortlinks,
        clicks=ClickTracker(shortlinks, int(config["click_tracker_workers"])),
        limiter=limiter,
        keys=APIKeyService(
            store,
            notifier,
            key_request_limiter,
            clock=clock,
            token_ttl_hours=float(config["verify_token_ttl_hours"]),
            key_length=int(config["api_key_length"]),
        ),
        cleanup=CleanupScheduler(
            pastes, shortlinks, int(config["cleanup_interval_seconds"])
        ),
    )
