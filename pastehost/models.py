import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .backends import StorageHandle


TEXT_MIME_PREFIXES = ("text/",)
TEXT_MIME_TYPES = {
    "application/json",
    "application/javascript",
    "application/xml",
    "application/x-yaml",
    "application/yaml",
    "application/x-sh",
    "application/toml",
}


def isoformat_utc(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


def is_text_content(mime_type: Optional[str]) -> bool:
    if not mime_type:
        return False
    base = mime_type.split(";", 1)[0].strip().lower()
    return base.startswith(TEXT_MIME_PREFIXES) or base in TEXT_MIME_TYPES


def is_expired(expires_at: Optional[float], now: float) -> bool:
    return expires_at is not None and now >= expires_at


@dataclass
class APIKey:
    key: str
    email: str
    name: str
    verified: bool = False
    verify_token: Optional[str] = None
    verify_expiry: Optional[float] = None
    allow_shortlinks: bool = False
    created_at: float = 0.0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "APIKey":
        return cls(
            key=row["key"],
            email=row["email"],
            name=row["name"],
            verified=bool(row["verified"]),
            verify_token=row["verify_token"],
            verify_expiry=row["verify_expiry"],
            allow_shortlinks=bool(row["allow_shortlinks"]),
            created_at=row["created_at"],
        )


@dataclass
class Paste:
    id: str
    storage: StorageHandle
    filename: str
    extension: str
    mime_type: str
    size: int
    delete_key: str
    created_at: float
    expires_at: Optional[float] = None
    api_key: Optional[str] = None
    private: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Paste":
        return cls(
            id=row["id"],
            storage=StorageHandle(row["storage_backend"], row["storage_path"]),
            filename=row["filename"],
            extension=row["extension"] or "",
            mime_type=row["mime_type"],
            size=int(row["size"]),
            delete_key=row["delete_key"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            api_key=row["api_key"],
            private=bool(row["private"]),
        )

    def is_expired(self, now: Optional[float] = None) -> bool:
        return is_expired(self.expires_at, time.time() if now is None else now)

    def to_response(self, base_url: str = "", include_delete_key: bool = False) -> Dict[str, Any]:
        suffix = f".{self.extension}" if self.extension else ""
        payload: Dict[str, Any] = {
            "id": self.id,
            "filename": self.filename,
            "extension": self.extension or None,
            "mime_type": self.mime_type,
            "size": self.size,
            "private": self.private,
            "created_at": isoformat_utc(self.created_at),
            "expires_at": isoformat_utc(self.expires_at),
            "url": f"{base_url}/p/{self.id}{suffix}",
            "raw_url": f"{base_url}/p/{self.id}/raw{suffix}",
            "download_url": f"{base_url}/p/{self.id}/download{suffix}",
        }
        if include_delete_key:
            payload["delete_url"] = f"{base_url}/p/{self.id}/{self.delete_key}"
        return payload


@dataclass
class Shortlink:
    id: str
    target_url: str
    api_key: str
    created_at: float
    title: Optional[str] = None
    clicks: int = 0
    last_click: Optional[float] = None
    expires_at: Optional[float] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Shortlink":
        return cls(
            id=row["id"],
            target_url=row["target_url"],
            api_key=row["api_key"],
            created_at=row["created_at"],
            title=row["title"],
            clicks=int(row["clicks"] or 0),
            last_click=row["last_click"],
            expires_at=row["expires_at"],
        )

    def is_expired(self, now: Optional[float] = None) -> bool:
        return is_expired(self.expires_at, time.time() if now is None else now)

    def to_response(self, base_url: str = "") -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": f"{base_url}/u/{self.id}",
            "target_url": self.target_url,
            "title": self.title,
            "created_at": isoformat_utc(self.created_at),
            "expires_at": isoformat_utc(self.expires_at),
        }

    def to_stats(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.target_url,
            "title": self.title,
            "clicks": self.clicks,
            "created_at": isoformat_utc(self.created_at),
            "last_click": isoformat_utc(self.last_click),
            "expires_at": isoformat_utc(self.expires_at),
        }
