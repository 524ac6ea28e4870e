from dataclasses import dataclass
from typing import Dict, Optional

FIELD_TYPES = ("string", "number", "boolean")


@dataclass(frozen=True)
class FieldSpec:
    type: str
    alias: Optional[str] = None

    def __post_init__(self) -> None:
        if self.type not in FIELD_TYPES:
            raise ValueError(f"Invalid field type '{self.type}'")


Schema = Dict[str, FieldSpec]

# Always hidden in markdown output; only used for sorting and stats.
INTERNAL_FIELDS: Schema = {
    "rawResolution": FieldSpec("number"),
    "rawSize": FieldSpec("number"),
}

# Shown in markdown output only with --all.
HIDDEN_FIELDS: Schema = {
    "qualityProfile": FieldSpec("string", "qp"),
    "audioLanguage": FieldSpec("string", "al"),
    "subtitleLanguage": FieldSpec("string", "sl"),
}

# Folded into another column in markdown output to keep the table narrow,
# e.g. "Dune (2021)" rather than separate title and year columns.
MERGED_FIELDS: Schema = {
    "year": FieldSpec("number", "y"),
    "audioChannels": FieldSpec("number", "ach"),
}
MERGED_INTO = {
    "year": "title",
    "audioChannels": "audioCodec",
}

# Display fields and the numeric field that sorts the same way.
RAW_TWINS = {
    "size": "rawSize",
    "resolution": "rawResolution",
}

BASE_SCHEMA: Schema = {
    "title": FieldSpec("string", "t"),
    "monitored": FieldSpec("boolean", "m"),
    "releaseGroup": FieldSpec("string", "rg"),
    "source": FieldSpec("string", "src"),
    "videoCodec": FieldSpec("string", "vc"),
    "audioCodec": FieldSpec("string", "ac"),
    "resolution": FieldSpec("string", "rs"),
    "size": FieldSpec("string", "sz"),
    **INTERNAL_FIELDS,
    **HIDDEN_FIELDS,
    **MERGED_FIELDS,
}

RADARR_SCHEMA: Schema = dict(BASE_SCHEMA)


def sonarr_schema(by_season: bool = False, by_episode: bool = False) -> Schema:
    """Schema for Sonarr rows at the given granularity.

    season only exists when rows are split by season or episode, episode only
    when split by episode.
    """
    schema: Schema = dict(BASE_SCHEMA)
    schema["type"] = FieldSpec("string")
    if by_season or by_episode:
        schema["season"] = FieldSpec("number", "s")
    if by_episode:
        schema["episode"] = FieldSpec("number", "e")
    return schema
