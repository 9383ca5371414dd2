import secrets
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlparse

from .errors import Conflict, Forbidden, NotFound, ValidationError
from .ids import generate_id
from .logs import get_logger, sanitize_log_value
from .models import APIKey, Shortlink
from .pastes import MAX_ID_ATTEMPTS, paginate, parse_sort_spec
from .retention import RequestedExpiry, RetentionPolicy
from .storage import SHORTLINK_SORT_COLUMNS, IdentifierTaken, MetadataStore


lifecycle_logger = get_logger("lifecycle")

MAX_TITLE_LENGTH = 255
MAX_URL_LENGTH = 2048


def validate_target_url(target_url: Optional[str]) -> str:
    if not isinstance(target_url, str) or not target_url.strip():
        raise ValidationError("url is required")
    candidate = target_url.strip()
    if len(candidate) > MAX_URL_LENGTH:
        raise ValidationError(f"url exceeds maximum length of {MAX_URL_LENGTH} characters")
    parsed = urlparse(candidate)
    if parsed.scheme.lower() not in ("http", "https"):
        raise ValidationError("url must use the http or https scheme")
    if not parsed.netloc or not parsed.hostname:
        raise ValidationError("url must be absolute")
    return candidate


class ShortlinkManager:
    def __init__(
        self,
        store: MetadataStore,
        policy: RetentionPolicy,
        *,
        clock: Callable[[], float] = time.time,
        id_length: int = 8,
        list_default_limit: int = 20,
        list_max_limit: int = 100,
    ) -> None:
        self.store = store
        self.policy = policy
        self.clock = clock
        self.id_length = id_length
        self.list_default_limit = list_default_limit
        self.list_max_limit = list_max_limit

    @staticmethod
    def _owns(link: Shortlink, caller: Optional[APIKey]) -> bool:
        return caller is not None and secrets.compare_digest(link.api_key, caller.key)

    def create(
        self,
        target_url: str,
        owner: Optional[APIKey],
        title: Optional[str] = None,
        expires_in: RequestedExpiry = None,
    ) -> Shortlink:
        # Capability is checked before the URL so unauthorised callers learn nothing else.
        if owner is None or not owner.allow_shortlinks:
            raise Forbidden("API key does not allow URL shortening")

        target_url = validate_target_url(target_url)
        if title is not None:
            if not isinstance(title, str):
                raise ValidationError("title must be a string")
            title = title.strip()[:MAX_TITLE_LENGTH] or None

        now = self.clock()
        expires_at = self.policy.evaluate(0, True, expires_in, now)
        link = Shortlink(
            id="",
            target_url=target_url,
            api_key=owner.key,
            created_at=now,
            title=title,
            expires_at=expires_at,
        )
        for attempt in range(MAX_ID_ATTEMPTS):
            link.id = generate_id(self.id_length)
            try:
                self.store.insert_shortlink(link)
                break
            except IdentifierTaken:
                lifecycle_logger.info(
                    "shortlink_id_collision shortlink_id=%s attempt=%d", link.id, attempt + 1
                )
        else:
            raise Conflict("Could not allocate a unique shortlink identifier")

        lifecycle_logger.info(
            "shortlink_created shortlink_id=%s target=%s expires_at=%s",
            link.id,
            sanitize_log_value(target_url),
            expires_at,
        )
        return link

    def resolve(self, link_id: str) -> Shortlink:
        link = self.store.get_shortlink(link_id)
        if link is None or link.is_expired(self.clock()):
            raise NotFound("Shortlink not found")
        return link

    def record_click(self, link_id: str) -> bool:
        """Count one click. Failures are logged and never raised."""

        try:
            updated = self.store.increment_clicks(link_id, self.clock())
        except Exception:
            lifecycle_logger.exception("shortlink_click_failed shortlink_id=%s", link_id)
            return False
        if not updated:
            lifecycle_logger.info("shortlink_click_missing shortlink_id=%s", link_id)
        return updated

    def stats(self, link_id: str, caller: Optional[APIKey]) -> Shortlink:
        link = self.resolve(link_id)
        if not self._owns(link, caller):
            raise Forbidden("Not authorized to view these stats")
        return link

    def update_expiry(self, link_id: str, caller: Optional[APIKey], expires_in: RequestedExpiry) -> Shortlink:
        link = self.resolve(link_id)
        if not self._owns(link, caller):
            raise Forbidden("Not authorized to modify this shortlink")
        if expires_in in (None, ""):
            raise ValidationError("expires_in is required")
        expires_at = self.policy.evaluate(0, True, expires_in, self.clock())
        if not self.store.update_shortlink_expiry(link.id, expires_at):
            raise NotFound("Shortlink not found")
        link.expires_at = expires_at
        lifecycle_logger.info(
            "shortlink_expiry_updated shortlink_id=%s expires_at=%s", link.id, expires_at
        )
        return link

    def purge(self, link: Shortlink) -> None:
        self.store.delete_shortlink(link.id)

    def delete(self, link_id: str, caller: Optional[APIKey]) -> None:
        link = self.resolve(link_id)
        if not self._owns(link, caller):
            raise Forbidden("Not authorized to delete this shortlink")
        self.purge(link)
        lifecycle_logger.info("shortlink_deleted shortlink_id=%s", link_id)

    def list(
        self,
        owner: APIKey,
        page: Optional[int] = 1,
        limit: Optional[int] = None,
        sort: Optional[str] = None,
    ) -> Tuple[List[Shortlink], int]:
        column, direction = parse_sort_spec(sort, SHORTLINK_SORT_COLUMNS)
        page, limit = paginate(page, limit, self.list_default_limit, self.list_max_limit)
        return self.store.list_shortlinks(
            owner.key,
            self.clock(),
            limit=limit,
            offset=(page - 1) * limit,
            sort_by=column,
            sort_order=direction,
        )

    def expired(self) -> List[Shortlink]:
        return self.store.expired_shortlinks(self.clock())

    def count(self) -> int:
        return self.store.count_shortlinks()


class ClickTracker:
    """Records redirect clicks off the request path."""

    def __init__(self, manager: ShortlinkManager, max_workers: int = 4) -> None:
        self.manager = manager
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, int(max_workers)), thread_name_prefix="click-tracker"
        )

    def track(self, link_id: str) -> Optional[Future]:
        try:
            return self._executor.submit(self.manager.record_click, link_id)
        except RuntimeError:
            # Executor already shut down during teardown.
            lifecycle_logger.warning("shortlink_click_dropped shortlink_id=%s", link_id)
            return None

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
