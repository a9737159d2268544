"""Decode nginx access-log lines into retrieval records.

Lines use a custom encoding written by the nginx ``log_format`` directive::

    addr=1.2.3.4&&b=100&&r=/ipfs/<cid>/<path>&&s=200&&ucs=HIT&&args=clientId=xyz

Fields are joined by ``&&``; each field is ``key=value`` where the value may
itself contain ``=``. The ``args`` field nests a query string joined by ``&``.

Everything in this module is pure: no I/O and no shared state, so any line
(including garbage) can be fed in without raising.
"""

import math
import re
from typing import Iterable, Optional

from ingestor.models import RETRIEVAL_PREFIX, RetrievalRecord

FIELD_DELIMITER = "&&"
ARGS_DELIMITER = "&"

SUCCESS_STATUS = 200

# Short nginx variable names -> normalized names
NGINX_LOG_KEYS_MAP = {
    "addr": "clientAddress",
    "b": "numBytesSent",
    "lt": "localTime",
    "r": "request",
    "ref": "referrer",
    "rid": "requestId",
    "rt": "requestDuration",
    "s": "status",
    "ua": "userAgent",
    "ucs": "cacheHit",
}

# Fields that are never numerically decoded
_VERBATIM_KEYS = frozenset({"lt", "rid", "addr"})

_NUMBER_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")


def decode_number(value: str) -> int | float | str:
    """Decode *value* as a number, falling back to the original string."""
    if not _NUMBER_RE.match(value):
        return value
    try:
        if "." not in value and "e" not in value.lower():
            return int(value)
        number = float(value)
    except ValueError:
        return value
    if not math.isfinite(number):
        return value
    return number


def decode_args(value: str) -> dict[str, str]:
    """Split a query-string style ``k=v&k2=v2`` value into a flat map."""
    args = {}
    for pair in value.split(ARGS_DELIMITER):
        name, _, arg_value = pair.partition("=")
        args[name] = arg_value
    return args


def decode_fields(line: str) -> dict:
    """Split a raw line into a dict keyed by normalized field name.

    Unknown keys are kept under their raw name.
    """
    fields: dict = {}
    for chunk in line.split(FIELD_DELIMITER):
        name, _, value = chunk.partition("=")

        if name == "args":
            parsed = decode_args(value)
        elif name in _VERBATIM_KEYS:
            parsed = value
        elif name == "ucs":
            parsed = value == "HIT"
        else:
            parsed = decode_number(value)

        fields[NGINX_LOG_KEYS_MAP.get(name, name)] = parsed
    return fields


def parse_line(line: str, testing_cid: str = "") -> Optional[RetrievalRecord]:
    """Parse one access-log line.

    Returns a RetrievalRecord for successful content retrievals, or None for
    every other line: non-retrieval paths, non-200 statuses, an empty content
    id, or traffic for the *testing_cid* sentinel.
    """
    fields = decode_fields(line.strip())

    request = fields.get("request")
    if not isinstance(request, str) or not request.startswith(RETRIEVAL_PREFIX):
        return None
    status = fields.get("status")
    if isinstance(status, bool) or status != SUCCESS_STATUS:
        return None

    content_id, _, file_path = request[len(RETRIEVAL_PREFIX):].partition("/")
    if not content_id:
        return None
    if testing_cid and content_id == testing_cid:
        return None

    args = fields.get("args")
    client_id = args.get("clientId") if isinstance(args, dict) else None

    return RetrievalRecord(
        content_id=content_id,
        file_path=file_path,
        client_address=fields.get("clientAddress"),
        client_id=client_id,
        local_time=fields.get("localTime"),
        num_bytes_sent=fields.get("numBytesSent"),
        range=fields.get("range"),
        cache_hit=fields.get("cacheHit") is True,
        referrer=fields.get("referrer"),
        request_duration=fields.get("requestDuration"),
        request_id=fields.get("requestId"),
        user_agent=fields.get("userAgent"),
    )


def parse_lines(lines: Iterable[str], testing_cid: str = "") -> list[RetrievalRecord]:
    """Parse many lines, keeping file order and skipping blanks."""
    records = []
    for line in lines:
        if not line.strip():
            continue
        record = parse_line(line, testing_cid)
        if record is not None:
            records.append(record)
    return records
