from __future__ import annotations

import re
from typing import Optional, Tuple

# Static service buckets used by duplicate detection. The first bucket with
# a matching pattern wins.
SERVICE_BUCKETS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("Streaming", (
        "NETFLIX", "HULU", "DISNEY", "HBO", "PARAMOUNT", "PEACOCK",
        "PRIME VIDEO", "APPLE TV", "YOUTUBE TV", "CRUNCHYROLL", "STARZ", "SHOWTIME",
    )),
    ("Music", (
        "SPOTIFY", "APPLE MUSIC", "TIDAL", "PANDORA", "YOUTUBE MUSIC", "AMAZON MUSIC",
        "DEEZER", "SIRIUSXM",
    )),
    ("CloudStorage", (
        "ICLOUD", "GOOGLE ONE", "DROPBOX", "ONEDRIVE", "BOX", "BACKBLAZE",
    )),
    ("News", (
        "NYT", "NEW YORK TIMES", "WSJ", "WASHINGTON POST", "MEDIUM", "SUBSTACK",
        "ATLANTIC", "ECONOMIST",
    )),
    ("Fitness", (
        "PELOTON", "STRAVA", "FITBIT", "MYFITNESSPAL", "HEADSPACE", "CALM",
        "BEACHBODY", "CLASSPASS",
    )),
)

_PATTERNS = tuple(
    (bucket, tuple(re.compile(r"(?<![A-Z0-9])" + re.escape(p) + r"(?![A-Z0-9])") for p in patterns))
    for bucket, patterns in SERVICE_BUCKETS
)


def bucket_for(merchant: Optional[str]) -> Optional[str]:
    """Service bucket for a canonical merchant, matched on whole words."""
    value = (merchant or "").upper()
    if not value:
        return None
    for bucket, patterns in _PATTERNS:
        if any(p.search(value) for p in patterns):
            return bucket
    return None
