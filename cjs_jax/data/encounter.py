"""
Encounter history store for cjs-jax.

Parses individual detection records (one binary string per individual, one
character per sampling occasion) into an immutable detection matrix and
tallies the per-occasion counts the abundance estimators consume.
"""

import numpy as np
import pandas as pd
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from ..core.exceptions import InvalidInputError, MalformedRecordError
from ..utils.logging import get_logger
from ..utils.validation import validate_capture_matrix


logger = get_logger(__name__)

_VALID_CHARACTERS = frozenset("01")


@dataclass(frozen=True)
class EncounterHistory:
    """Detection record of a single individual."""
    detections: Tuple[bool, ...]
    individual_id: Optional[str] = None

    @property
    def n_occasions(self) -> int:
        return len(self.detections)

    @property
    def first_detection(self) -> Optional[int]:
        """0-based index of the first detection, None if never detected."""
        for occasion, detected in enumerate(self.detections):
            if detected:
                return occasion
        return None

    def as_string(self) -> str:
        return "".join("1" if d else "0" for d in self.detections)


class EncounterHistories:
    """
    Immutable collection of equal-length encounter histories.

    The detection matrix is stored as a read-only boolean array of shape
    (individuals x occasions).
    """

    __slots__ = ("_matrix", "_individual_ids")

    def __init__(self, matrix: np.ndarray, individual_ids: Optional[Sequence[str]] = None):
        matrix = np.asarray(matrix)
        validate_capture_matrix(matrix)

        if individual_ids is not None:
            individual_ids = tuple(str(i) for i in individual_ids)
            if len(individual_ids) != matrix.shape[0]:
                raise InvalidInputError(
                    f"{len(individual_ids)} individual ids for {matrix.shape[0]} histories"
                )

        frozen = np.array(matrix, dtype=bool)
        frozen.setflags(write=False)
        self._matrix = frozen
        self._individual_ids = individual_ids

    @property
    def matrix(self) -> np.ndarray:
        """Read-only boolean detection matrix."""
        return self._matrix

    @property
    def individual_ids(self) -> Optional[Tuple[str, ...]]:
        return self._individual_ids

    @property
    def n_individuals(self) -> int:
        return self._matrix.shape[0]

    @property
    def n_occasions(self) -> int:
        return self._matrix.shape[1]

    def __len__(self) -> int:
        return self.n_individuals

    def __getitem__(self, index: int) -> EncounterHistory:
        row = self._matrix[index]
        individual_id = self._individual_ids[index] if self._individual_ids else None
        return EncounterHistory(tuple(bool(v) for v in row), individual_id)

    def __iter__(self):
        for index in range(self.n_individuals):
            yield self[index]

    def __eq__(self, other) -> bool:
        if not isinstance(other, EncounterHistories):
            return NotImplemented
        return (
            self._matrix.shape == other._matrix.shape
            and bool(np.array_equal(self._matrix, other._matrix))
            and self._individual_ids == other._individual_ids
        )

    def __repr__(self) -> str:
        return f"EncounterHistories(n_individuals={self.n_individuals}, n_occasions={self.n_occasions})"

    def take(self, indices: Sequence[int]) -> "EncounterHistories":
        """Build a new dataset from the given row indices (repeats allowed)."""
        indices = np.asarray(indices, dtype=np.intp)
        if indices.size == 0:
            raise InvalidInputError("cannot build a dataset from zero individuals")

        ids = None
        if self._individual_ids is not None:
            ids = [self._individual_ids[i] for i in indices]
        return EncounterHistories(self._matrix[indices], ids)

    def detected_counts(self) -> np.ndarray:
        """Number of individuals detected at each occasion."""
        return self._matrix.sum(axis=0).astype(np.int64)

    def first_detection_occasions(self) -> np.ndarray:
        """0-based first detection occasion per individual, -1 if never detected."""
        detected_any = self._matrix.any(axis=1)
        first = np.argmax(self._matrix, axis=1).astype(np.int64)
        return np.where(detected_any, first, -1)

    def to_strings(self) -> List[str]:
        return ["".join("1" if d else "0" for d in row) for row in self._matrix]

    def to_dataframe(self) -> pd.DataFrame:
        """RMark-style frame with a character 'ch' column."""
        frame = pd.DataFrame({'ch': self.to_strings()})
        if self._individual_ids is not None:
            frame.insert(0, 'id', list(self._individual_ids))
        return frame


@dataclass(frozen=True)
class OccasionCounts:
    """Per-occasion tallies of detected, newly marked and previously marked individuals."""
    detected: np.ndarray
    newly_marked: np.ndarray
    previously_marked: np.ndarray

    @property
    def n_occasions(self) -> int:
        return len(self.detected)


def occasion_counts(histories: EncounterHistories) -> OccasionCounts:
    """
    Tally detections per occasion.

    newly_marked[t] counts individuals whose first detection is occasion t;
    previously_marked[t] = detected[t] - newly_marked[t].
    """
    detected = histories.detected_counts()
    first = histories.first_detection_occasions()
    newly_marked = np.bincount(first[first >= 0], minlength=histories.n_occasions).astype(np.int64)

    return OccasionCounts(
        detected=detected,
        newly_marked=newly_marked,
        previously_marked=detected - newly_marked,
    )


def parse_encounter_histories(
    lines: Iterable[str],
    individual_ids: Optional[Sequence[str]] = None
) -> EncounterHistories:
    """
    Parse encounter-history records, one per individual.

    Surrounding whitespace is stripped and blank lines are skipped.

    Args:
        lines: Records such as ``"0110100"``
        individual_ids: Optional identifiers, one per non-blank record

    Returns:
        EncounterHistories

    Raises:
        MalformedRecordError: A record holds characters other than '0'/'1'
            or its length differs from the first record
        InvalidInputError: No records were supplied
    """
    rows: List[List[bool]] = []
    expected_length: Optional[int] = None

    for line_number, raw in enumerate(lines, start=1):
        record = raw.strip()
        if not record:
            continue

        invalid = set(record) - _VALID_CHARACTERS
        if invalid:
            raise MalformedRecordError(
                line_number=line_number,
                record=record,
                reason=f"invalid characters {sorted(invalid)}",
            )

        if expected_length is None:
            expected_length = len(record)
        elif len(record) != expected_length:
            raise MalformedRecordError(
                line_number=line_number,
                record=record,
                reason=f"length {len(record)} differs from {expected_length}",
            )

        rows.append([c == "1" for c in record])

    if not rows:
        raise InvalidInputError(
            "no encounter histories found",
            suggestions=["Provide at least one record of '0'/'1' characters"],
        )

    histories = EncounterHistories(np.array(rows, dtype=bool), individual_ids)
    logger.debug(
        "Parsed encounter histories",
        n_individuals=histories.n_individuals,
        n_occasions=histories.n_occasions,
    )
    return histories


def load_encounter_histories(path: Union[str, Path]) -> EncounterHistories:
    """Load a newline-delimited encounter-history file (no header)."""
    path = Path(path)
    with open(path, 'r', encoding='utf-8') as f:
        histories = parse_encounter_histories(f)

    logger.info(
        f"Loaded encounter histories from {path}",
        n_individuals=histories.n_individuals,
        n_occasions=histories.n_occasions,
    )
    return histories


def from_dataframe(
    frame: pd.DataFrame,
    column: str = 'ch',
    id_column: Optional[str] = None
) -> EncounterHistories:
    """
    Build histories from an RMark-style frame with a capture-history column.

    Args:
        frame: Input frame
        column: Name of the capture-history column
        id_column: Optional individual identifier column
    """
    if column not in frame.columns:
        raise InvalidInputError(
            f"missing '{column}' column for capture histories",
            suggestions=[
                "RMark-style data requires a 'ch' column",
                "Pass column=... to name the capture-history column",
            ],
        )

    ids = frame[id_column].astype(str).tolist() if id_column else None
    return parse_encounter_histories(frame[column].astype(str).tolist(), individual_ids=ids)
