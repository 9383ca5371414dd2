import secrets
import time
from typing import BinaryIO, Callable, List, Optional, Tuple

from .backends import StorageHandle, StorageRegistry
from .errors import (
    Conflict,
    Forbidden,
    NotFound,
    PersistenceError,
    ValidationError,
)
from .ids import generate_id, generate_secret
from .ingest import NormalizedUpload
from .logs import get_logger, sanitize_log_value
from .models import APIKey, Paste
from .retention import RequestedExpiry, RetentionPolicy
from .storage import PASTE_SORT_COLUMNS, IdentifierTaken, MetadataStore


lifecycle_logger = get_logger("lifecycle")

MAX_ID_ATTEMPTS = 10


def parse_sort_spec(sort: Optional[str], allowed: dict) -> Tuple[str, str]:
    """Parse ``"<column> [asc|desc]"`` against a whitelist of columns."""

    if not sort or not sort.strip():
        return "created_at", "desc"
    parts = sort.strip().split()
    column = parts[0].lower()
    direction = parts[1].lower() if len(parts) > 1 else "desc"
    if column not in allowed or direction not in {"asc", "desc"} or len(parts) > 2:
        raise ValidationError(
            f"Invalid sort: {sort!r}",
            details={"allowed_sort": sorted(allowed)},
        )
    return column, direction


def paginate(page: Optional[int], limit: Optional[int], default_limit: int, max_limit: int) -> Tuple[int, int]:
    page = max(int(page or 1), 1)
    if limit is None or int(limit) < 1:
        limit = default_limit
    return page, min(int(limit), max_limit)


class PasteManager:
    """Create, read, re-expire and delete pastes.

    Bytes are written to the storage backend before the metadata row exists
    and removed from it before the row goes away, so a row never points at
    storage that is already gone.
    """

    def __init__(
        self,
        store: MetadataStore,
        backends: StorageRegistry,
        policy: RetentionPolicy,
        *,
        clock: Callable[[], float] = time.time,
        id_length: int = 8,
        delete_key_length: int = 32,
        list_default_limit: int = 20,
        list_max_limit: int = 100,
    ) -> None:
        self.store = store
        self.backends = backends
        self.policy = policy
        self.clock = clock
        self.id_length = id_length
        self.delete_key_length = delete_key_length
        self.list_default_limit = list_default_limit
        self.list_max_limit = list_max_limit

    def _compensate(self, handle: StorageHandle, paste_id: str, cause: Exception) -> None:
        try:
            self.backends.delete(handle)
        except Exception as error:
            lifecycle_logger.error(
                "paste_compensating_delete_failed paste_id=%s handle=%s error=%s",
                paste_id,
                handle,
                error,
            )
            raise PersistenceError(
                f"Failed to record paste and failed to release storage object {handle}"
            ) from cause
        lifecycle_logger.warning(
            "paste_create_rolled_back paste_id=%s handle=%s error=%s",
            paste_id,
            handle,
            cause,
        )

    def create(self, upload: NormalizedUpload) -> Paste:
        caller = upload.caller
        now = self.clock()
        # Policy is evaluated before any write so rejections leave nothing behind.
        expires_at = self.policy.evaluate(
            upload.size, caller is not None, upload.options.expires_in, now
        )

        handle = self.backends.put(upload.data)
        paste = Paste(
            id="",
            storage=handle,
            filename=upload.filename,
            extension=upload.extension,
            mime_type=upload.mime_type,
            size=upload.size,
            delete_key=generate_secret(self.delete_key_length),
            created_at=now,
            expires_at=expires_at,
            api_key=caller.key if caller else None,
            private=upload.options.private,
        )

        try:
            for attempt in range(MAX_ID_ATTEMPTS):
                paste.id = generate_id(self.id_length)
                try:
                    self.store.insert_paste(paste)
                    break
                except IdentifierTaken:
                    lifecycle_logger.info(
                        "paste_id_collision paste_id=%s attempt=%d", paste.id, attempt + 1
                    )
            else:
                raise Conflict("Could not allocate a unique paste identifier")
        except Exception as error:
            self._compensate(handle, paste.id, error)
            if isinstance(error, (Conflict, PersistenceError)):
                raise
            raise PersistenceError(f"Failed to record paste: {error}") from error

        lifecycle_logger.info(
            "paste_created paste_id=%s filename=%s size=%d mime_type=%s owner=%s expires_at=%s",
            paste.id,
            sanitize_log_value(paste.filename),
            paste.size,
            paste.mime_type,
            "key" if paste.api_key else "anonymous",
            paste.expires_at,
        )
        return paste

    def get(self, paste_id: str) -> Paste:
        paste = self.store.get_paste(paste_id)
        if paste is None or paste.is_expired(self.clock()):
            raise NotFound("Paste not found")
        return paste

    def open(self, paste_id: str) -> Tuple[Paste, BinaryIO]:
        paste = self.get(paste_id)
        try:
            stream = self.backends.get(paste.storage)
        except NotFound:
            lifecycle_logger.warning(
                "paste_content_missing paste_id=%s handle=%s", paste_id, paste.storage
            )
            raise NotFound("Paste not found")
        return paste, stream

    def read(self, paste_id: str) -> Tuple[Paste, bytes]:
        paste, stream = self.open(paste_id)
        try:
            return paste, stream.read()
        finally:
            stream.close()

    def update_expiry(self, paste_id: str, caller: Optional[APIKey], expires_in: RequestedExpiry) -> Paste:
        paste = self.get(paste_id)
        if caller is None or paste.api_key is None or not secrets.compare_digest(paste.api_key, caller.key):
            raise Forbidden("Not authorized to modify this paste")
        if expires_in in (None, ""):
            raise ValidationError("expires_in is required")

        expires_at = self.policy.evaluate(paste.size, True, expires_in, self.clock())
        if not self.store.update_paste_expiry(paste.id, expires_at):
            raise NotFound("Paste not found")
        paste.expires_at = expires_at
        lifecycle_logger.info(
            "paste_expiry_updated paste_id=%s expires_at=%s", paste.id, expires_at
        )
        return paste

    def purge(self, paste: Paste) -> None:
        """Release the storage object, then drop the metadata row.

        A storage failure propagates and leaves the row in place.
        """

        self.backends.delete(paste.storage)
        self.store.delete_paste(paste.id)

    def delete(
        self,
        paste_id: str,
        caller: Optional[APIKey] = None,
        delete_key: Optional[str] = None,
    ) -> None:
        paste = self.get(paste_id)
        owner_match = (
            caller is not None
            and paste.api_key is not None
            and secrets.compare_digest(paste.api_key, caller.key)
        )
        key_match = bool(delete_key) and secrets.compare_digest(paste.delete_key, delete_key)
        if not owner_match and not key_match:
            lifecycle_logger.warning("paste_delete_forbidden paste_id=%s", paste_id)
            raise Forbidden("Not authorized to delete this paste")

        self.purge(paste)
        lifecycle_logger.info(
            "paste_deleted paste_id=%s via=%s", paste_id, "owner" if owner_match else "delete_key"
        )

    def list(
        self,
        owner: APIKey,
        page: Optional[int] = 1,
        limit: Optional[int] = None,
        sort: Optional[str] = None,
    ) -> Tuple[List[Paste], int]:
        column, direction = parse_sort_spec(sort, PASTE_SORT_COLUMNS)
        page, limit = paginate(page, limit, self.list_default_limit, self.list_max_limit)
        return self.store.list_pastes(
            owner.key,
            self.clock(),
            limit=limit,
            offset=(page - 1) * limit,
            sort_by=column,
            sort_order=direction,
        )

    def expired(self) -> List[Paste]:
        return self.store.expired_pastes(self.clock())

    def totals(self) -> Tuple[int, int]:
        return self.store.paste_totals()
