"""
Domain service: structured group names.

Format: CLUSTER-SEASONYY-VARIETY-G##, e.g. ``CLS-W24-JAS-G01``.
"""
import re

# Checked in order; multi-word names first so "mua dong" wins over "dong"
SEASON_ABBREVIATIONS = [
    ("mua dong", "MD"),
    ("mua xuan", "MX"),
    ("mua he", "MH"),
    ("mua thu", "MT"),
    ("winter", "W"),
    ("spring", "SP"),
    ("summer", "SU"),
    ("autumn", "A"),
    ("fall", "F"),
    ("dong", "D"),
    ("xuan", "X"),
    ("thu", "T"),
    ("he", "H"),
]


def abbreviate(text: str, max_length: int) -> str:
    """Initials of a multi-word name, else its first characters, upper-cased."""
    if not text or not text.strip():
        return "UNK"

    words = [w for w in re.split(r"[\s\-_]+", text) if w]
    if len(words) > 1:
        return "".join(w[0] for w in words).upper()[:max_length]
    return text.strip()[:max_length].upper()


def season_abbreviation(season_name: str) -> str:
    lowered = (season_name or "").lower()
    for key, abbreviation in SEASON_ABBREVIATIONS:
        if key in lowered:
            return abbreviation
    return abbreviate(season_name, 2)


class GroupNameGenerator:
    """Generates names for groups that were not named by the user."""

    def generate(
        self,
        cluster_name: str,
        season_name: str,
        year: int,
        variety_name: str,
        group_number: int,
    ) -> str:
        return (
            f"{abbreviate(cluster_name, 3)}-{season_abbreviation(season_name)}{year % 100:02d}"
            f"-{abbreviate(variety_name, 3)}-G{group_number:02d}"
        )
