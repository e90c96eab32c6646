"""Encounter-history data handling and resampling for cjs-jax."""

from .encounter import (
    EncounterHistory,
    EncounterHistories,
    OccasionCounts,
    occasion_counts,
    parse_encounter_histories,
    load_encounter_histories,
    from_dataframe,
)
from .sampling import (
    resample,
    resample_indices,
    BootstrapStreams,
)

__all__ = [
    "EncounterHistory",
    "EncounterHistories",
    "OccasionCounts",
    "occasion_counts",
    "parse_encounter_histories",
    "load_encounter_histories",
    "from_dataframe",
    "resample",
    "resample_indices",
    "BootstrapStreams",
]
