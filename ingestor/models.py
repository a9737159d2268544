"""Retrieval record model."""

from dataclasses import dataclass
from typing import Optional

# Prefix of every content-retrieval request path
RETRIEVAL_PREFIX = "/ipfs/"


@dataclass(frozen=True)
class RetrievalRecord:
    content_id: str
    file_path: str
    client_address: Optional[str] = None
    client_id: Optional[str] = None
    local_time: Optional[str] = None
    num_bytes_sent: Optional[int | float | str] = None
    range: Optional[int | float | str] = None
    cache_hit: bool = False
    referrer: Optional[int | float | str] = None
    request_duration: Optional[int | float | str] = None
    request_id: Optional[str] = None
    user_agent: Optional[int | float | str] = None

    @property
    def request(self) -> str:
        """Reconstruct the request path the record was parsed from."""
        if self.file_path:
            return f"{RETRIEVAL_PREFIX}{self.content_id}/{self.file_path}"
        return f"{RETRIEVAL_PREFIX}{self.content_id}"


def record_to_payload(record: RetrievalRecord) -> dict:
    """Convert a record to the camelCase dict the collector expects."""
    return {
        "cacheHit": record.cache_hit,
        "cid": record.content_id,
        "filePath": record.file_path,
        "clientAddress": record.client_address,
        "clientId": record.client_id,
        "localTime": record.local_time,
        "numBytesSent": record.num_bytes_sent,
        "range": record.range,
        "referrer": record.referrer,
        "requestDuration": record.request_duration,
        "requestId": record.request_id,
        "userAgent": record.user_agent,
    }


def record_to_point_fields(record: RetrievalRecord) -> dict:
    """Map a record back to the nginx short keys used by the time-series sink."""
    return {
        "addr": record.client_address,
        "b": record.num_bytes_sent,
        "lt": record.local_time,
        "r": record.request,
        "ref": record.referrer,
        "rid": record.request_id,
        "rt": record.request_duration,
        "s": 200,
        "ua": record.user_agent,
        "ucs": record.cache_hit,
    }
