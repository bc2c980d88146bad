"""Heuristic extraction of names, CPF numbers and addresses from free text.

Each field has an ordered list of matcher strategies. The first strategy that
produces an acceptable candidate wins; inside one strategy the longest
candidate wins (ties go to the earliest occurrence). Extractors never raise:
no match is ``None``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence

from .utils import digits_only, normalize_text

NAME_WORD = r"[A-ZÁÀÂÃÉÊÍÓÔÕÚÇ][a-záàâãéêíóôõúüç]+"
NAME_CONNECTOR = r"(?:d[aeo]s?|e)"
FULL_NAME_RE = re.compile(rf"{NAME_WORD}(?:\s+(?:{NAME_CONNECTOR}\s+)?{NAME_WORD}){{1,5}}")
LABELLED_NAME_RE = re.compile(
    r"\b(?:me chamo|meu nome (?:é|e)|meu nome completo (?:é|e)|sou (?:o|a)|aqui (?:é|e) (?:o|a)|nome dele (?:é|e)|nome dela (?:é|e))"
    r"\s*:?\s+([a-záàâãéêíóôõúüç]+(?:\s+[a-záàâãéêíóôõúüç]+){1,6})",
    re.IGNORECASE,
)
BARE_NAME_RE = re.compile(r"^[a-záàâãéêíóôõúüç]+(?:\s+[a-záàâãéêíóôõúüç]+){1,5}$", re.IGNORECASE)

CPF_LABELLED_RE = re.compile(
    r"\bcpf\b\D{0,20}?(\d{3}[.\s]?\d{3}[.\s]?\d{3}[-.\s]?\d{2})(?!\d)",
    re.IGNORECASE,
)
CPF_FORMATTED_RE = re.compile(r"(?<!\d)(\d{3}[.\s]\d{3}[.\s]\d{3}[-.\s]\d{2})(?!\d)")
CPF_BARE_RE = re.compile(r"(?<!\d)(\d{11})(?!\d)")
CPF_ONLY_MESSAGE_RE = re.compile(r"^[\d.\-\s/]+$")

ADDRESS_LABELLED_RE = re.compile(r"\bendere[çc]o\b\s*(?:(?:é|e)\b)?\s*:?\s*([^.\n;]+)", re.IGNORECASE)
ADDRESS_STREET_RE = re.compile(
    r"\b((?:rua|avenida|av\.|travessa|alameda|rodovia|estrada|praça)\s+[^.\n;]+)",
    re.IGNORECASE,
)
ADDRESS_RESIDENCE_RE = re.compile(r"\b(?:moro|mora|residente)\s+(?:na|no|em)\s+([^.\n;]+)", re.IGNORECASE)

# Capitalised words that open sentences or name institutions rather than people.
NAME_STOPWORDS = {
    "bom", "boa", "dia", "tarde", "noite", "ola", "oi", "obrigado", "obrigada",
    "dr", "dra", "doutor", "doutora", "advogado", "advogada", "senhor", "senhora",
    "inss", "cpf", "rg", "cnh", "detran", "crv", "dut", "bpc", "loas",
    "sim", "nao", "ok", "quero", "preciso", "gostaria", "tenho", "estou",
    "procuracao", "transferencia", "veiculo", "imovel", "aposentadoria", "auxilio",
    "rua", "avenida", "travessa", "alameda", "brasil",
    "mae", "pai", "filho", "filha", "irma", "irmao", "esposa", "marido", "titular",
    "dono", "dona", "proprietario", "proprietaria", "cliente", "favor", "dele", "dela",
}
# Words that end a labelled or bare name ("meu nome é joão silva e preciso...").
NAME_BREAK_WORDS = {
    "e", "preciso", "quero", "gostaria", "tenho", "estou", "sou", "moro", "meu", "minha",
    "cpf", "com", "para", "pra", "que", "mas", "porque", "aqui", "nao", "sim", "ok",
    "obrigado", "obrigada", "tudo", "bem", "oi", "ola",
}
# A bare answer holding any of these is a sentence about the data, not a name.
BARE_ANSWER_REJECT_WORDS = {
    "o", "a", "os", "as", "um", "uma", "ao", "na", "no", "nas", "nos", "em", "pelo", "pela",
    "qual", "quais", "quanto", "quanta", "quantos", "como", "quando", "onde", "quem", "por",
    "esta", "estao", "ta", "tem", "foi", "era", "ser", "isso", "esse", "essa", "isto",
    "eu", "voce", "ele", "ela", "seu", "sua", "dele", "dela", "nome", "numero",
    "errado", "errada", "certo", "certa", "correto", "correta", "incorreto", "trocado",
    "nunca", "ainda", "tambem", "so", "mesmo", "entendi", "duvida",
}
NAME_CONNECTORS = {"da", "de", "do", "das", "dos", "e"}


@dataclass
class MatcherStrategy:
    """One ordered extraction rule: a finder returning raw candidates."""
    name: str
    finder: Callable[[str], List[str]]


@dataclass
class ExtractedEntities:
    """Per-message extraction result; any field may be None."""
    name: Optional[str] = None
    id_number: Optional[str] = None
    address: Optional[str] = None


def _pick_longest(candidates: Sequence[str]) -> Optional[str]:
    # Longest wins; max() keeps the earliest among equals.
    if not candidates:
        return None
    return max(candidates, key=len)


def _run_strategies(
    strategies: Iterable[MatcherStrategy], text: str, accept: Callable[[str], bool]
) -> Optional[str]:
    for strategy in strategies:
        candidates = [c for c in strategy.finder(text) if c and accept(c)]
        chosen = _pick_longest(candidates)
        if chosen:
            return chosen
    return None


def _trim_name_words(words: List[str]) -> List[str]:
    # Drop stopwords at both edges ("Boa Tarde Pedro Souza" -> "Pedro Souza").
    while words and normalize_text(words[0]) in NAME_STOPWORDS:
        words = words[1:]
    while words and (normalize_text(words[-1]) in NAME_STOPWORDS or normalize_text(words[-1]) in NAME_CONNECTORS):
        words = words[:-1]
    return words


def _title_case(words: List[str]) -> str:
    return " ".join(w.lower() if w.lower() in NAME_CONNECTORS else w[:1].upper() + w[1:].lower() for w in words)


def _cut_at_break(words: List[str]) -> List[str]:
    kept: List[str] = []
    for word in words:
        if normalize_text(word) in NAME_BREAK_WORDS and kept:
            break
        kept.append(word)
    return kept


def _find_labelled_names(text: str) -> List[str]:
    found = []
    for match in LABELLED_NAME_RE.finditer(text):
        words = _cut_at_break(match.group(1).split())
        words = _trim_name_words(words)
        if len(words) >= 2:
            found.append(_title_case(words))
    return found


def _find_capitalised_names(text: str) -> List[str]:
    found = []
    for match in FULL_NAME_RE.finditer(text):
        words = _trim_name_words(match.group(0).split())
        if len([w for w in words if w[:1].isupper()]) >= 2:
            found.append(" ".join(words))
    return found


def _find_bare_name(text: str) -> List[str]:
    # Connectors only between words: "de souza" or "maria de" are not names.
    stripped = text.strip().strip(".!,")
    if not BARE_NAME_RE.match(stripped):
        return []
    words = stripped.split()
    keys = [normalize_text(w) for w in words]
    if keys[0] in NAME_CONNECTORS or keys[-1] in NAME_CONNECTORS:
        return []
    rejected = NAME_BREAK_WORDS | NAME_STOPWORDS | BARE_ANSWER_REJECT_WORDS
    if any(key in rejected for key in keys):
        return []
    return [_title_case(words)]


NAME_STRATEGIES = [
    MatcherStrategy("labelled", _find_labelled_names),
    MatcherStrategy("capitalised", _find_capitalised_names),
]
EXPECTED_NAME_STRATEGIES = NAME_STRATEGIES + [MatcherStrategy("bare", _find_bare_name)]


def _name_conflicts(candidate: str, other_names: Iterable[Optional[str]]) -> bool:
    key = normalize_text(candidate)
    for other in other_names:
        other_key = normalize_text(other or "")
        if other_key and (key == other_key or key in other_key):
            return True
    return False


def extract_person_name(
    text: str, other_names: Iterable[Optional[str]] = (), expecting_name: bool = False
) -> Optional[str]:
    """Purpose: Extract one person's full name from a message.
    Inputs/Outputs: Inputs are the raw text, names already known for other people in the
        session, and whether the dialog is explicitly asking for a name; returns the name
        or None.
    Side Effects / State: None; pure function.
    Dependencies: NAME_STRATEGIES (labelled, capitalised) plus the bare-answer strategy
        when expecting_name is True.
    Failure Modes: Never raises; ambiguous text yields the longest candidate.
    If Removed: Identification and counterpart collection cannot advance.
    Testing Notes: "Meu nome é João Carlos Pereira" -> "João Carlos Pereira"; a candidate
        contained in other_names is rejected.
    """
    # Reject candidates that repeat someone already known in this session.
    if not text:
        return None
    others = list(other_names)
    strategies = EXPECTED_NAME_STRATEGIES if expecting_name else NAME_STRATEGIES
    return _run_strategies(strategies, text, lambda c: not _name_conflicts(c, others))


def _find_labelled_cpf(text: str) -> List[str]:
    return [digits_only(m.group(1)) for m in CPF_LABELLED_RE.finditer(text)]


def _find_formatted_cpf(text: str) -> List[str]:
    return [digits_only(m.group(1)) for m in CPF_FORMATTED_RE.finditer(text)]


def _find_bare_cpf(text: str) -> List[str]:
    return [m.group(1) for m in CPF_BARE_RE.finditer(text)]


def _find_digits_only_message(text: str) -> List[str]:
    stripped = text.strip()
    if CPF_ONLY_MESSAGE_RE.match(stripped):
        digits = digits_only(stripped)
        if len(digits) == 11:
            return [digits]
    return []


ID_STRATEGIES = [
    MatcherStrategy("labelled", _find_labelled_cpf),
    MatcherStrategy("formatted", _find_formatted_cpf),
    MatcherStrategy("bare", _find_bare_cpf),
    MatcherStrategy("digits_only", _find_digits_only_message),
]


def extract_id_number(text: str, other_ids: Iterable[Optional[str]] = ()) -> Optional[str]:
    """Purpose: Extract an 11-digit CPF in labelled, punctuated or bare form.
    Inputs/Outputs: Inputs are raw text and IDs already held for other people; returns
        the 11 digits without punctuation, or None.
    Side Effects / State: None; pure function.
    Dependencies: ID_STRATEGIES in order labelled, formatted, bare, digits-only message.
    Failure Modes: Never raises; check digits are not validated.
    If Removed: The subject and counterpart IDs are never captured.
    Testing Notes: "CPF: 123.456.789-01", "12345678901" and "123 456 789 01" all map to
        "12345678901".
    """
    # Skip IDs that already belong to another party in the session.
    if not text:
        return None
    taken = {digits_only(value or "") for value in other_ids}
    return _run_strategies(ID_STRATEGIES, text, lambda c: len(c) == 11 and c not in taken)


def looks_like_id_number(text: str) -> bool:
    return extract_id_number(text) is not None


def _clean_address(raw: str) -> str:
    return re.sub(r"\s+", " ", raw).strip(" ,:-")


def _address_finder(pattern: re.Pattern) -> Callable[[str], List[str]]:
    def find(text: str) -> List[str]:
        return [_clean_address(m.group(1)) for m in pattern.finditer(text)]

    return find


ADDRESS_STRATEGIES = [
    MatcherStrategy("labelled", _address_finder(ADDRESS_LABELLED_RE)),
    MatcherStrategy("street", _address_finder(ADDRESS_STREET_RE)),
    MatcherStrategy("residence", _address_finder(ADDRESS_RESIDENCE_RE)),
]


def extract_address(text: str) -> Optional[str]:
    """Extract a postal address fragment ("Rua das Flores, 120") or None."""
    if not text:
        return None
    return _run_strategies(ADDRESS_STRATEGIES, text, lambda c: len(c) >= 5)


def extract_entities(
    text: str,
    other_names: Iterable[Optional[str]] = (),
    other_ids: Iterable[Optional[str]] = (),
    expecting_name: bool = False,
) -> ExtractedEntities:
    # Run every field extractor over the same message.
    return ExtractedEntities(
        name=extract_person_name(text, other_names, expecting_name=expecting_name),
        id_number=extract_id_number(text, other_ids),
        address=extract_address(text),
    )
