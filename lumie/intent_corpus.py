"""Intent corpus loading, indexing, and matching.

This module loads intent training files into immutable IntentRecord objects and
builds the exact and fuzzy lookup structures used by the chat engine. Scores
follow one convention everywhere: a float in [0, 1] where 0 is a perfect match.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from difflib import SequenceMatcher
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from .errors import CorpusLoadError
from .models import IntentRecordPayload
from .utils import normalize_text, unique_in_order

logger = logging.getLogger("lumie.corpus")

FALLBACK_INTENT = "None"


@dataclass(frozen=True)
class IntentRecord:
    """Immutable intent with normalized utterances and candidate answers."""
    intent: str
    utterances: Tuple[str, ...]
    answers: Tuple[str, ...]
    context: Optional[str] = None
    set_context: Optional[str] = None

    @property
    def is_follow_up_only(self) -> bool:
        return bool(self.context) and not self.set_context

    def belongs_to(self, context: str) -> bool:
        return self.context == context or self.set_context == context

    def allowed_in(self, current_context: Optional[str]) -> bool:
        """Follow-up-only intents are valid only while their context is active."""
        if not self.is_follow_up_only:
            return True
        return current_context == self.context


@dataclass(frozen=True)
class FuzzyMatch:
    record: IntentRecord
    score: float


class MatchKind(str, Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class MatchResult:
    """Resolved intent for a message; record is None only for the echo fallback."""
    kind: MatchKind
    record: Optional[IntentRecord]
    score: float

    @property
    def confidence(self) -> float:
        if self.kind is MatchKind.EXACT:
            return 1.0
        if self.kind is MatchKind.FUZZY:
            return self.score
        return 0.0


@dataclass(frozen=True)
class CorpusMeta:
    """Metadata describing the loaded training files for startup logging."""
    files: Tuple[Tuple[str, str], ...]
    record_count: int
    utterance_count: int


class CorpusLoader:
    def __init__(self, paths: Sequence[Path]) -> None:
        """Purpose: Configure the loader with the training files to read.
        Inputs/Outputs: Input is a sequence of JSON file paths; no return value.
        Side Effects / State: Stores the paths for later load calls.
        Dependencies: None beyond Path usage.
        Failure Modes: None at init; load() reports read/parse errors.
        If Removed: Startup cannot assemble the intent corpus.
        Testing Notes: Instantiate with tmp_path files and call load().
        """
        # Store the file list in the order given; later files override earlier ones.
        self._paths = tuple(paths)

    def load(self) -> Tuple[List[IntentRecordPayload], CorpusMeta]:
        """Purpose: Read and validate every training file.
        Inputs/Outputs: No inputs; returns validated payloads in file order and CorpusMeta.
        Side Effects / State: Reads file contents and hashes them.
        Dependencies: Uses json, hashlib, and IntentRecordPayload validation.
        Failure Modes: Any unreadable file, malformed JSON, non-array document, or invalid
            record raises CorpusLoadError; partial corpora are never returned.
        If Removed: The engine has nothing to match against.
        Testing Notes: Break one file and confirm the whole load fails with its path.
        """
        # Validate each file completely before anything is handed to the corpus.
        if not self._paths:
            raise CorpusLoadError("no training data files configured")

        payloads: List[IntentRecordPayload] = []
        files: List[Tuple[str, str]] = []
        for path in self._paths:
            try:
                raw_bytes = path.read_bytes()
            except OSError as exc:
                raise CorpusLoadError(f"cannot read training file ({exc.strerror or exc})", path) from exc
            try:
                data = json.loads(raw_bytes.decode("utf-8-sig"))
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                raise CorpusLoadError(f"invalid JSON ({exc})", path) from exc
            if not isinstance(data, list):
                raise CorpusLoadError("expected a JSON array of intent records", path)

            for index, item in enumerate(data):
                try:
                    payloads.append(IntentRecordPayload.model_validate(item))
                except ValidationError as exc:
                    raise CorpusLoadError(f"record {index} is invalid: {exc}", path) from exc
            files.append((path.name, hashlib.sha256(raw_bytes).hexdigest()))

        meta = CorpusMeta(
            files=tuple(files),
            record_count=len(payloads),
            utterance_count=sum(len(payload.utterances) for payload in payloads),
        )
        return payloads, meta


def merge_records(payloads: Iterable[IntentRecordPayload]) -> List[IntentRecord]:
    """Purpose: Collapse records sharing an intent id into one record.
    Inputs/Outputs: Input is payloads in file order; output is IntentRecords in first-seen order.
    Side Effects / State: Logs a warning whenever a later record overrides a context field.
    Dependencies: unique_in_order for stable unions.
    Failure Modes: None; payloads are already validated.
    If Removed: Duplicate ids would shadow each other depending on index order.
    Testing Notes: Two files defining "greeting" yield one record with both utterance sets.
    """
    # Union utterances and answers; a later non-null context field wins.
    merged: Dict[str, Dict[str, object]] = {}
    for payload in payloads:
        answers = [answer for answer in payload.answers if answer.strip()]
        entry = merged.get(payload.intent)
        if entry is None:
            merged[payload.intent] = {
                "utterances": list(payload.utterances),
                "answers": answers,
                "context": payload.context,
                "set_context": payload.set_context,
            }
            continue
        entry["utterances"].extend(payload.utterances)
        entry["answers"].extend(answers)
        for field_name in ("context", "set_context"):
            value = getattr(payload, field_name)
            if value is None or value == entry[field_name]:
                continue
            if entry[field_name] is not None:
                logger.warning(
                    "intent=%s %s overridden %s -> %s",
                    payload.intent,
                    field_name,
                    entry[field_name],
                    value,
                )
            entry[field_name] = value

    return [
        IntentRecord(
            intent=intent,
            utterances=tuple(unique_in_order(entry["utterances"])),
            answers=tuple(unique_in_order(entry["answers"])),
            context=entry["context"],
            set_context=entry["set_context"],
        )
        for intent, entry in merged.items()
    ]


class FuzzyIndex:
    """Best-candidate similarity search over (utterance, record) pairs."""

    def __init__(self, records: Iterable[IntentRecord]) -> None:
        self._entries: Tuple[Tuple[str, IntentRecord], ...] = tuple(
            (utterance, record) for record in records for utterance in record.utterances
        )

    def __len__(self) -> int:
        return len(self._entries)

    def search(self, query: str) -> Optional[FuzzyMatch]:
        """Purpose: Find the utterance most similar to query.
        Inputs/Outputs: Input is a normalized query; returns the best FuzzyMatch or None
            when the index is empty.
        Side Effects / State: None.
        Dependencies: difflib.SequenceMatcher; score is 1 - ratio.
        Failure Modes: None.
        If Removed: Typos and paraphrases never reach an intent.
        Testing Notes: "helo" against "hello" scores about 0.11; ties keep the first entry.
        """
        # seq2 is cached by SequenceMatcher, so the query goes there and utterances rotate.
        if not self._entries or not query:
            return None
        matcher = SequenceMatcher(None, autojunk=False)
        matcher.set_seq2(query)
        best_record: Optional[IntentRecord] = None
        best_ratio = -1.0
        for utterance, record in self._entries:
            matcher.set_seq1(utterance)
            if matcher.real_quick_ratio() <= best_ratio or matcher.quick_ratio() <= best_ratio:
                continue
            ratio = matcher.ratio()
            if ratio > best_ratio:
                best_ratio = ratio
                best_record = record
                if ratio >= 1.0:
                    break
        if best_record is None:
            return None
        return FuzzyMatch(record=best_record, score=min(1.0, max(0.0, 1.0 - best_ratio)))


class IntentCorpus:
    """Read-only intent collection with exact and fuzzy indices."""

    def __init__(
        self,
        records: Sequence[IntentRecord],
        fuzzy_score_limit: float = 0.45,
        tie_margin: float = 0.05,
    ) -> None:
        """Purpose: Build every lookup structure once from merged records.
        Inputs/Outputs: Inputs are merged records and scoring knobs; no return value.
        Side Effects / State: Populates exact maps, the global fuzzy index, and one
            scoped fuzzy index per context value.
        Dependencies: FuzzyIndex, IntentRecord.belongs_to.
        Failure Modes: None; records are assumed valid.
        If Removed: resolve() has nothing to search.
        Testing Notes: Scoped indices must contain both context and setContext owners.
        """
        # The fallback sentinel is kept aside and never indexed.
        self._records: Tuple[IntentRecord, ...] = tuple(records)
        self.fuzzy_score_limit = fuzzy_score_limit
        self.tie_margin = tie_margin
        self.fallback_record: Optional[IntentRecord] = next(
            (record for record in self._records if record.intent == FALLBACK_INTENT), None
        )
        matchable = [record for record in self._records if record.intent != FALLBACK_INTENT]

        self._exact: Dict[str, IntentRecord] = _exact_map(matchable)
        self._global_index = FuzzyIndex(matchable)

        contexts: List[str] = []
        for record in matchable:
            contexts.extend(value for value in (record.context, record.set_context) if value)
        self._scoped_exact: Dict[str, Dict[str, IntentRecord]] = {}
        self._scoped_index: Dict[str, FuzzyIndex] = {}
        for context in unique_in_order(contexts):
            members = [record for record in matchable if record.belongs_to(context)]
            self._scoped_exact[context] = _exact_map(members)
            self._scoped_index[context] = FuzzyIndex(members)

    @classmethod
    def build(
        cls,
        payloads: Iterable[IntentRecordPayload],
        fuzzy_score_limit: float = 0.45,
        tie_margin: float = 0.05,
    ) -> "IntentCorpus":
        return cls(merge_records(payloads), fuzzy_score_limit=fuzzy_score_limit, tie_margin=tie_margin)

    @property
    def records(self) -> Tuple[IntentRecord, ...]:
        return self._records

    @property
    def contexts(self) -> Tuple[str, ...]:
        return tuple(self._scoped_index)

    def __len__(self) -> int:
        return len(self._records)

    def exact_candidate(self, message: str, current_context: Optional[str]) -> Optional[FuzzyMatch]:
        """Verbatim lookup; the active context's utterances take precedence over the rest."""
        normalized = normalize_text(message)
        record = None
        if current_context:
            record = self._scoped_exact.get(current_context, {}).get(normalized)
        if record is None:
            record = self._exact.get(normalized)
        if record is None:
            return None
        return FuzzyMatch(record=record, score=0.0)

    def fuzzy_candidate(self, message: str, current_context: Optional[str]) -> Optional[FuzzyMatch]:
        """Purpose: Pick the best similarity candidate across the scoped and global indices.
        Inputs/Outputs: Inputs are the message and active context; returns a candidate
            whose score is within fuzzy_score_limit, or None.
        Side Effects / State: None.
        Dependencies: FuzzyIndex.search on both indices.
        Failure Modes: None.
        If Removed: Only verbatim utterances would ever match.
        Testing Notes: A global candidate replaces a scoped one only when it is better by
            more than tie_margin.
        """
        # Scoped relevance wins unless the global candidate is clearly better.
        normalized = normalize_text(message)
        scoped = None
        if current_context and current_context in self._scoped_index:
            scoped = self._scoped_index[current_context].search(normalized)
        best = self._global_index.search(normalized)
        if scoped is not None and (best is None or not best.score < scoped.score - self.tie_margin):
            best = scoped
        if best is None:
            return None
        if best.score > self.fuzzy_score_limit:
            logger.debug("fuzzy candidate intent=%s score=%.3f over limit", best.record.intent, best.score)
            return None
        return best

    def fallback(self) -> MatchResult:
        return MatchResult(kind=MatchKind.FALLBACK, record=self.fallback_record, score=1.0)

    def resolve(self, message: str, current_context: Optional[str] = None) -> MatchResult:
        """Purpose: Resolve a message to an intent with exact, fuzzy, gating, and fallback phases.
        Inputs/Outputs: Inputs are the raw message and active context; returns a MatchResult.
        Side Effects / State: None; the corpus is never mutated.
        Dependencies: exact_candidate, fuzzy_candidate, IntentRecord.allowed_in.
        Failure Modes: None; no match resolves to the fallback.
        If Removed: Callers must re-implement phase ordering themselves.
        Testing Notes: Exact beats fuzzy; a gated candidate goes straight to fallback.
        """
        # Fuzzy runs only when the exact phase produced no candidate at all.
        candidate = self.exact_candidate(message, current_context)
        kind = MatchKind.EXACT
        if candidate is None:
            candidate = self.fuzzy_candidate(message, current_context)
            kind = MatchKind.FUZZY
        if candidate is None:
            return self.fallback()
        if not candidate.record.allowed_in(current_context):
            # A gated candidate is discarded outright; the next-best is never tried.
            logger.info(
                "intent=%s gated context=%s required=%s",
                candidate.record.intent,
                current_context or "none",
                candidate.record.context,
            )
            return self.fallback()
        return MatchResult(kind=kind, record=candidate.record, score=candidate.score)


def _exact_map(records: Iterable[IntentRecord]) -> Dict[str, IntentRecord]:
    # First owner of an utterance keeps it.
    lookup: Dict[str, IntentRecord] = {}
    for record in records:
        for utterance in record.utterances:
            lookup.setdefault(utterance, record)
    return lookup


def load_corpus(
    paths: Sequence[Path],
    fuzzy_score_limit: float = 0.45,
    tie_margin: float = 0.05,
) -> IntentCorpus:
    """Single build step: load, validate, merge, and index the training files."""
    payloads, meta = CorpusLoader(paths).load()
    corpus = IntentCorpus.build(payloads, fuzzy_score_limit=fuzzy_score_limit, tie_margin=tie_margin)
    logger.info(
        "corpus loaded files=%s records=%s intents=%s utterances=%s contexts=%s",
        ",".join(f"{name}@{digest[:12]}" for name, digest in meta.files),
        meta.record_count,
        len(corpus),
        meta.utterance_count,
        ",".join(corpus.contexts) or "-",
    )
    if corpus.fallback_record is None:
        logger.warning("no %r intent in corpus; unmatched messages will be echoed", FALLBACK_INTENT)
    return corpus
