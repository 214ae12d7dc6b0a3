"""Identity keys for listing records.

This module defines the **key contract** shared by the deduplication index,
the sharded store, and the rebuilder.  Every layer derives keys through these
functions so that a record classified at ingestion time lands in the same
bucket when the store is rebuilt from disk.

Key summary
-----------
+----------------+--------------------------------------+------------------------------------+
| Key            | Built from                           | Example                            |
+================+======================================+====================================+
| primary key    | ``ADDRESS`` + ``POSTAL``             | ``"1 MAIN ST-M5V3A8"``             |
+----------------+--------------------------------------+------------------------------------+
| discriminator  | ``PRICE`` + ``AGENT``                | ``"$800,000-SMITH"``               |
+----------------+--------------------------------------+------------------------------------+
| composite key  | primary key + discriminator          | ``"1 MAIN ST-M5V3A8-$800,000-SMITH"``|
+----------------+--------------------------------------+------------------------------------+
| shard key      | first two characters of ``POSTAL``   | ``"M5"``                           |
+----------------+--------------------------------------+------------------------------------+

Two records with the same primary key describe the same physical listing.
The discriminator tells a re-submission apart from a price change or a
competing agent; uniqueness is enforced on the composite key.

The joined string forms are for display and logs.  A field may itself
contain ``-``, so two different records can share a joined key; the
deduplication index compares :func:`key_parts` tuples instead.

Typical usage::

    from listingstore.core.keys import composite_key, shard_key

    ck = composite_key(record)
    bucket = shard_key(record)
"""

from __future__ import annotations

import logging

from listingstore.core.models import Record

__all__ = [
    "KEY_SEPARATOR",
    "FALLBACK_SHARD_KEY",
    "normalize",
    "primary_key",
    "discriminator",
    "composite_key",
    "key_parts",
    "shard_key",
]

logger = logging.getLogger(__name__)

#: Separator placed between key components.
KEY_SEPARATOR: str = "-"

#: Bucket for records whose postal code cannot yield a two-character prefix.
#: Sorts after every alphanumeric prefix and is a valid worksheet title.
FALLBACK_SHARD_KEY: str = "_MISC"

#: Number of leading postal characters forming the shard key.
SHARD_PREFIX_LENGTH: int = 2


def normalize(value: str) -> str:
    """Trim surrounding whitespace and upper-case *value*."""
    return value.strip().upper()


def primary_key(record: Record) -> str:
    """Return the normalised ``ADDRESS-POSTAL`` identity of a listing.

    Example::

        assert primary_key(Record(address=" 1 Main St", postal="m5v3a8")) == "1 MAIN ST-M5V3A8"
    """
    return f"{normalize(record.address)}{KEY_SEPARATOR}{normalize(record.postal)}"


def discriminator(record: Record) -> str:
    """Return the normalised ``PRICE-AGENT`` pair of a listing."""
    return f"{normalize(record.price)}{KEY_SEPARATOR}{normalize(record.agent)}"


def composite_key(record: Record) -> str:
    """Return the joined uniqueness key: primary key followed by discriminator."""
    return f"{primary_key(record)}{KEY_SEPARATOR}{discriminator(record)}"


def key_parts(record: Record) -> tuple[str, str, str, str]:
    """Return the normalised ``(ADDRESS, POSTAL, PRICE, AGENT)`` of a listing.

    The first two items are the primary key, the last two the discriminator.
    """
    return (
        normalize(record.address),
        normalize(record.postal),
        normalize(record.price),
        normalize(record.agent),
    )


def shard_key(record: Record) -> str:
    """Return the shard a record is routed to.

    The key is the first two characters of the normalised postal code.
    Postal codes shorter than two characters, or whose prefix contains
    anything but letters and digits, go to :data:`FALLBACK_SHARD_KEY`.
    """
    prefix = normalize(record.postal)[:SHARD_PREFIX_LENGTH]
    if len(prefix) < SHARD_PREFIX_LENGTH or not prefix.isalnum():
        return FALLBACK_SHARD_KEY
    return prefix
