"""
Keyword Extraction and Scoring
==============================

Lexical side of hybrid search: index keywords per chunk/document and
score query overlap against them.

Keyword sources, in priority order:
1. Payroll vocabulary found in the text
2. Euro amounts (max 3) and dates (max 2)
3. Upper-case tokens, usually section headers (max 5)
4. Most frequent content words
"""

import re
from collections import Counter
from typing import Any, Dict, Iterable, List, Mapping, Optional

PAYROLL_TERMS = [
    "salario", "nómina", "percepciones", "deducciones", "irpf", "seguridad social",
    "base cotización", "contingencias", "empresa", "trabajador", "dni", "nss",
    "categoria", "convenio", "plus", "extra", "prorrata", "líquido", "bruto",
    "devengos", "retribuciones", "horas extra", "desempleo", "formación profesional",
]

STOPWORDS = {
    # English
    "the", "and", "for", "with", "that", "this", "from", "are", "was", "were",
    "have", "has", "had", "not", "but", "you", "your", "our", "its", "into",
    "of", "to", "in", "on", "at", "by", "an", "or", "is", "be", "as", "it",
    # Spanish
    "el", "la", "los", "las", "de", "del", "en", "un", "una", "por", "con",
    "para", "que", "se", "al", "lo", "su", "sus", "es", "y", "o", "a",
    "como", "mas", "más", "pero", "sin", "sobre", "este", "esta",
}

AMOUNT_PATTERN = re.compile(r"\d+(?:[.,]\d+)*\s*€")
THOUSANDS_PATTERN = re.compile(r"^\d{1,3}(?:\.\d{3})+$")
DATE_PATTERN = re.compile(r"\b\d{1,2}/\d{1,2}/\d{2,4}\b")
UPPERCASE_PATTERN = re.compile(r"\b[A-ZÁÉÍÓÚÑ]{2,}\b")
WORD_PATTERN = re.compile(r"[\wáéíóúüñ]+", re.UNICODE)


def tokenize(text: str) -> List[str]:
    """Lower-case word tokens without stopwords or single characters."""
    return [
        w for w in WORD_PATTERN.findall(text.lower())
        if len(w) > 1 and w not in STOPWORDS
    ]


def parse_number(text: str) -> Optional[float]:
    """Parse "1.234,56 €", "1.800 €", "1234,56" or "1234.56"; None if not a number."""
    text = text.replace("€", "").replace(" ", "").strip()
    if "," in text and "." in text:
        text = text.replace(".", "").replace(",", ".")
    elif THOUSANDS_PATTERN.match(text):
        text = text.replace(".", "")
    elif "," in text:
        text = text.replace(",", ".")
    try:
        return float(text)
    except ValueError:
        return None


def amount_keyword(value: Any) -> Optional[str]:
    """
    Canonical amount keyword, e.g. "1.800,00 €" and 1800 both give "1800.00€".

    Chunk text and structured document data share this form so their
    amount keywords overlap.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        number = parse_number(value)
    else:
        return None
    if number is None:
        return None
    return f"{number:.2f}€"


def _add(keywords: List[str], seen: set, value: str) -> None:
    if value and value not in seen:
        seen.add(value)
        keywords.append(value)


def extract_keywords(text: str, limit: int = 15) -> List[str]:
    """
    Extract index keywords from chunk text.

    Args:
        text: Chunk or document text
        limit: Maximum number of keywords returned

    Returns:
        Deduplicated keywords in priority order
    """
    keywords: List[str] = []
    seen: set = set()
    lowered = text.lower()

    for term in PAYROLL_TERMS:
        if term in lowered:
            _add(keywords, seen, term)

    for amount in AMOUNT_PATTERN.findall(text)[:3]:
        _add(keywords, seen, amount_keyword(amount))

    for date in DATE_PATTERN.findall(text)[:2]:
        _add(keywords, seen, date)

    for word in UPPERCASE_PATTERN.findall(text)[:5]:
        _add(keywords, seen, word.lower())

    counts = Counter(w for w in tokenize(text) if len(w) >= 4 and not w.isdigit())
    # Ties broken alphabetically so extraction is deterministic
    for word, _ in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0])):
        if len(keywords) >= limit:
            break
        _add(keywords, seen, word)

    return keywords[:limit]


def extract_document_keywords(document_data: Mapping[str, Any], limit: int = 15) -> List[str]:
    """Keywords describing a processed payslip's structured output."""
    keywords: List[str] = []
    seen: set = set()

    company = document_data.get("company") or {}
    employee = document_data.get("employee") or {}

    if isinstance(company, Mapping) and company.get("name"):
        _add(keywords, seen, str(company["name"]))
    if isinstance(employee, Mapping) and employee.get("category"):
        _add(keywords, seen, str(employee["category"]))
    if document_data.get("period_start"):
        _add(keywords, seen, str(document_data["period_start"]))
    if document_data.get("net_pay") is not None:
        _add(keywords, seen, amount_keyword(document_data["net_pay"]))

    perceptions = document_data.get("perceptions") or []
    if isinstance(perceptions, list):
        for item in perceptions[:3]:
            if isinstance(item, Mapping) and item.get("concept"):
                _add(keywords, seen, str(item["concept"]))

    return keywords[:limit]


def keyword_tokens(keywords: Iterable[str]) -> set:
    """Token set of a keyword list ("seguridad social" -> {"seguridad", "social"})."""
    tokens = set()
    for keyword in keywords:
        tokens.update(tokenize(keyword))
        tokens.add(keyword.lower())
    return tokens


def keyword_score(query: str, keywords: Iterable[str]) -> float:
    """
    Normalized lexical overlap between a query and a keyword set.

    Returns:
        Fraction of distinct query tokens found in the keyword tokens, in [0, 1]
    """
    query_tokens = set(tokenize(query))
    if not query_tokens:
        return 0.0
    index = keyword_tokens(keywords)
    if not index:
        return 0.0
    return len(query_tokens & index) / len(query_tokens)


def score_many(query: str, keyword_sets: Dict[str, Iterable[str]]) -> Dict[str, float]:
    """Keyword scores for several candidates, dropping zero scores."""
    scores = {}
    for candidate_id, keywords in keyword_sets.items():
        score = keyword_score(query, keywords)
        if score > 0:
            scores[candidate_id] = score
    return scores
