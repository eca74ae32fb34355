from __future__ import annotations

import hashlib
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Union

from .config import AppConfig, load_app_config
from .errors import ParseError


_LOGGER = logging.getLogger("dealtrigger.conditions")

FIRST_CLASS_FACTS: frozenset[str] = frozenset({"is_home", "team_score", "opponent_score", "margin"})
COMPARISON_OPERATORS: tuple[str, ...] = (">=", ">", "<=", "<", "==")

_TOKEN_RE = re.compile(r"\d+\+|>=|<=|==|[<>=]|\d+|[a-z][a-z0-9'_]*|\S")
_THRESHOLD_RE = re.compile(r"^(\d+)\+$")
_INT_RE = re.compile(r"^\d+$")

_CONJUNCTION_TOKENS: frozenset[str] = frozenset({"and", "&", "+"})
_DISJUNCTION_TOKENS: frozenset[str] = frozenset({"or"})
_FILLER_TOKENS: frozenset[str] = frozenset(
    {"team", "the", "a", "an", "game", "games", "with", "at", "on", "of", "scores"}
)
_WIN_TOKENS: frozenset[str] = frozenset({"win", "wins", "won", "victory"})
_HOME_TOKENS: frozenset[str] = frozenset({"home"})
_AWAY_TOKENS: frozenset[str] = frozenset({"away", "road"})

DEFAULT_SYNONYMS: dict[str, str] = {
    "runs": "runs",
    "runs scored": "runs",
    "run": "runs",
    "strikeouts": "strikeouts",
    "strikeout": "strikeouts",
    "strike outs": "strikeouts",
    "ks": "strikeouts",
    "hits": "hits",
    "hit": "hits",
    "stolen bases": "stolen_bases",
    "stolenbases": "stolen_bases",
    "stolen_bases": "stolen_bases",
    "steals": "stolen_bases",
    "home runs": "home_runs",
    "homeruns": "home_runs",
    "homers": "home_runs",
    "doubles": "doubles",
    "triples": "triples",
    "walks": "walks",
    "rbis": "rbis",
    "errors": "errors",
    "goals": "goals",
    "points": "points",
    "team score": "team_score",
    "opponent score": "opponent_score",
    "runs allowed": "opponent_score",
    "margin": "margin",
    "point margin": "margin",
    "run differential": "margin",
    "margin of victory": "margin",
}

# Singular phrases that mean "at least one" when no threshold is given.
DEFAULT_OCCURRENCES: dict[str, str] = {
    "stolen base": "stolen_bases",
    "steal": "stolen_bases",
    "home run": "home_runs",
    "homer": "home_runs",
    "triple": "triples",
    "grand slam": "grand_slams",
}


@dataclass(frozen=True)
class Comparison:
    fact: str
    operator: str
    threshold: int

    def canonical(self) -> str:
        return f"cmp({self.fact}{self.operator}{self.threshold})"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "comparison", "fact": self.fact, "operator": self.operator, "threshold": self.threshold}


@dataclass(frozen=True)
class Conjunction:
    children: tuple["Predicate", ...]

    def canonical(self) -> str:
        return "and(" + ",".join(child.canonical() for child in self.children) + ")"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "conjunction", "children": [child.to_dict() for child in self.children]}


@dataclass(frozen=True)
class Disjunction:
    children: tuple["Predicate", ...]

    def canonical(self) -> str:
        return "or(" + ",".join(child.canonical() for child in self.children) + ")"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "disjunction", "children": [child.to_dict() for child in self.children]}


@dataclass(frozen=True)
class Literal:
    value: bool

    def canonical(self) -> str:
        return "true" if self.value else "false"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "literal", "value": self.value}


Predicate = Union[Comparison, Conjunction, Disjunction, Literal]

WIN_PREDICATE = Comparison("margin", ">", 0)
HOME_PREDICATE = Comparison("is_home", "==", 1)
AWAY_PREDICATE = Comparison("is_home", "==", 0)


@dataclass(frozen=True)
class ConditionVocabulary:
    synonyms: dict[str, str]
    occurrences: dict[str, str]
    max_phrase_words: int = field(init=False)

    def __post_init__(self) -> None:
        longest = max(
            (len(phrase.split()) for phrase in (*self.synonyms, *self.occurrences)),
            default=1,
        )
        object.__setattr__(self, "max_phrase_words", longest)

    def match_stat(self, tokens: list[str], start: int) -> tuple[str, str, int] | None:
        """Longest stat phrase starting at ``start`` as ``(phrase, stat_key, width)``."""
        for width in range(min(self.max_phrase_words, len(tokens) - start), 0, -1):
            phrase = " ".join(tokens[start : start + width])
            stat_key = self.occurrences.get(phrase) or self.synonyms.get(phrase)
            if stat_key is not None:
                return phrase, stat_key, width
        return None


def default_vocabulary() -> ConditionVocabulary:
    return ConditionVocabulary(synonyms=dict(DEFAULT_SYNONYMS), occurrences=dict(DEFAULT_OCCURRENCES))


def vocabulary_from_config(config: AppConfig | None = None) -> ConditionVocabulary:
    cfg = config or load_app_config()
    synonyms = dict(DEFAULT_SYNONYMS)
    synonyms.update(cfg.vocabulary.synonyms)
    occurrences = dict(DEFAULT_OCCURRENCES)
    occurrences.update(cfg.vocabulary.occurrences)
    return ConditionVocabulary(synonyms=synonyms, occurrences=occurrences)


@dataclass(frozen=True)
class Condition:
    source: str
    normalized: str
    predicate: Predicate
    signature: str


def normalize_source(source: str | None) -> str:
    return " ".join(str(source or "").lower().split())


def condition_signature(predicate: Predicate) -> str:
    return hashlib.sha256(predicate.canonical().encode("utf-8")).hexdigest()


def _tokenize(normalized: str) -> list[str]:
    return _TOKEN_RE.findall(normalized)


def _split_groups(tokens: list[str], source: str) -> list[list[list[str]]]:
    """Split tokens into disjuncts of conjoined clauses."""
    disjuncts: list[list[list[str]]] = [[[]]]
    previous_connector: str | None = None
    for token in tokens:
        if token in _DISJUNCTION_TOKENS or token in _CONJUNCTION_TOKENS:
            if not disjuncts[-1][-1]:
                raise ParseError(f"connector '{token}' has no clause before it", token=token, source=source)
            if token in _DISJUNCTION_TOKENS:
                disjuncts.append([[]])
            else:
                disjuncts[-1].append([])
            previous_connector = token
            continue
        disjuncts[-1][-1].append(token)
    if not disjuncts[-1][-1]:
        raise ParseError(
            f"connector '{previous_connector}' has no clause after it",
            token=previous_connector,
            source=source,
        )
    return disjuncts


def _parse_clause(tokens: list[str], vocabulary: ConditionVocabulary, source: str) -> list[Predicate]:
    atoms: list[Predicate] = []
    idx = 0
    while idx < len(tokens):
        token = tokens[idx]

        threshold_match = _THRESHOLD_RE.match(token)
        if threshold_match is not None:
            stat = vocabulary.match_stat(tokens, idx + 1)
            if stat is None:
                offending = tokens[idx + 1] if idx + 1 < len(tokens) else token
                raise ParseError(f"'{token}' must be followed by a stat, got '{offending}'", token=offending, source=source)
            _, stat_key, width = stat
            atoms.append(Comparison(stat_key, ">=", int(threshold_match.group(1))))
            idx += 1 + width
            continue

        stat = vocabulary.match_stat(tokens, idx)
        if stat is not None:
            phrase, stat_key, width = stat
            next_idx = idx + width
            next_token = tokens[next_idx] if next_idx < len(tokens) else None
            if next_token is not None and (next_token in COMPARISON_OPERATORS or next_token == "="):
                value_token = tokens[next_idx + 1] if next_idx + 1 < len(tokens) else None
                if value_token is None or _INT_RE.match(value_token) is None:
                    offending = value_token or next_token
                    raise ParseError(
                        f"comparison '{phrase} {next_token}' needs an integer threshold",
                        token=offending,
                        source=source,
                    )
                operator = "==" if next_token == "=" else next_token
                atoms.append(Comparison(stat_key, operator, int(value_token)))
                idx = next_idx + 2
                continue
            if phrase in vocabulary.occurrences:
                atoms.append(Comparison(stat_key, ">=", 1))
                idx = next_idx
                continue
            raise ParseError(f"stat '{phrase}' needs a threshold such as 'N+ {phrase}'", token=phrase, source=source)

        if token in _WIN_TOKENS:
            atoms.append(WIN_PREDICATE)
        elif token in _HOME_TOKENS:
            atoms.append(HOME_PREDICATE)
        elif token in _AWAY_TOKENS:
            atoms.append(AWAY_PREDICATE)
        elif token == "any":
            following = tokens[idx + 1] if idx + 1 < len(tokens) else None
            if following not in _WIN_TOKENS:
                raise ParseError("'any' must qualify a win", token=token, source=source)
        elif token in _FILLER_TOKENS:
            pass
        elif _INT_RE.match(token):
            raise ParseError(f"bare number '{token}' needs a comparator or '+'", token=token, source=source)
        elif token in COMPARISON_OPERATORS or token == "=":
            raise ParseError(f"comparator '{token}' has no stat before it", token=token, source=source)
        else:
            raise ParseError(f"unrecognized token '{token}'", token=token, source=source)
        idx += 1

    if not atoms:
        raise ParseError(f"clause '{' '.join(tokens)}' has no condition", token=tokens[0], source=source)
    return atoms


def _flatten_conjunction(parts: list[Predicate]) -> Predicate:
    children: list[Predicate] = []
    for part in parts:
        if isinstance(part, Conjunction):
            children.extend(part.children)
        else:
            children.append(part)
    if len(children) == 1:
        return children[0]
    return Conjunction(tuple(children))


def compile_predicate(normalized: str, vocabulary: ConditionVocabulary, *, source: str | None = None) -> Predicate:
    """Compile an already-normalized condition string into a predicate tree."""
    if not normalized:
        return Literal(False)
    original = source if source is not None else normalized
    tokens = _tokenize(normalized)
    disjuncts: list[Predicate] = []
    for clauses in _split_groups(tokens, original):
        parts: list[Predicate] = []
        for clause_tokens in clauses:
            parts.extend(_parse_clause(clause_tokens, vocabulary, original))
        disjuncts.append(_flatten_conjunction(parts))
    if len(disjuncts) == 1:
        return disjuncts[0]
    return Disjunction(tuple(disjuncts))


def parse(source: str | None, vocabulary: ConditionVocabulary | None = None) -> Predicate:
    """Compile ``source`` without caching; raises ``ParseError`` on bad input."""
    return compile_predicate(normalize_source(source), vocabulary or default_vocabulary(), source=source)


class ConditionParser:
    """Compiles condition strings and memoizes trees in a bounded LRU cache."""

    def __init__(self, *, cache_maxsize: int = 1024, vocabulary: ConditionVocabulary | None = None) -> None:
        if cache_maxsize < 1:
            raise ValueError("cache_maxsize must be positive")
        self._vocabulary = vocabulary or default_vocabulary()
        self._cache_maxsize = cache_maxsize
        self._cache: OrderedDict[str, Condition] = OrderedDict()
        self._lock = Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def vocabulary(self) -> ConditionVocabulary:
        return self._vocabulary

    def compile(self, source: str | None) -> Condition:
        normalized = normalize_source(source)
        with self._lock:
            cached = self._cache.get(normalized)
            if cached is not None:
                self._cache.move_to_end(normalized)
                self._hits += 1
                return cached
            self._misses += 1

        predicate = compile_predicate(normalized, self._vocabulary, source=source)
        condition = Condition(
            source=str(source or ""),
            normalized=normalized,
            predicate=predicate,
            signature=condition_signature(predicate),
        )

        with self._lock:
            existing = self._cache.get(normalized)
            if existing is not None:
                self._cache.move_to_end(normalized)
                return existing
            self._cache[normalized] = condition
            while len(self._cache) > self._cache_maxsize:
                evicted, _ = self._cache.popitem(last=False)
                self._evictions += 1
                _LOGGER.debug("condition cache evicted normalized=%r", evicted)
        _LOGGER.debug("condition compiled normalized=%r signature=%s", normalized, condition.signature[:12])
        return condition

    def parse(self, source: str | None) -> Predicate:
        return self.compile(source).predicate

    def cache_info(self) -> dict[str, int]:
        with self._lock:
            return {
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "size": len(self._cache),
                "maxsize": self._cache_maxsize,
            }

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0


def build_parser_from_config(config: AppConfig | None = None) -> ConditionParser:
    cfg = config or load_app_config()
    return ConditionParser(
        cache_maxsize=cfg.parser.cache_maxsize,
        vocabulary=vocabulary_from_config(cfg),
    )
