"""Upload-Metadata header codec.

Wire format: comma-separated ``<key> <base64(utf8(value))>`` entries. Parsing is
lenient: an entry without a value, or whose value is not valid base64/UTF-8, is
dropped on its own and the rest of the header is kept.
"""

import base64
import binascii
import logging


logger = logging.getLogger(__name__)


def parse_metadata_header(header: str | None) -> dict[str, str]:
    result: dict[str, str] = {}
    if not header or not header.strip():
        return result

    for pair in header.split(","):
        parts = pair.strip().split(" ", 1)
        if len(parts) != 2:
            logger.debug(f"Dropping metadata entry without value: {pair.strip()!r}")
            continue

        key, encoded = parts[0], parts[1].strip()
        try:
            result[key] = base64.b64decode(encoded, validate=True).decode("utf-8")
        except (binascii.Error, ValueError):
            # UnicodeDecodeError is a ValueError
            logger.debug(f"Dropping undecodable metadata entry: key={key!r}")

    return result


def serialize_metadata_header(metadata: dict[str, str]) -> str:
    return ",".join(
        f"{key} {base64.b64encode(value.encode('utf-8')).decode('ascii')}" for key, value in metadata.items()
    )
