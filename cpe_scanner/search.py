# cpe_scanner/search.py
"""
Builds the full-text query used to look up CPE vendor/product pairs, and
parses that query syntax back into weighted terms for the index.

Query shape:  " product:( struts 2 core )  AND  vendor:( apache software foundation ) "
A term may carry a boost ("struts^5"); special characters are backslash-escaped.
"""
import logging
import re
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

FIELD_PRODUCT = "product"
FIELD_VENDOR = "vendor"

WEIGHTING_BOOST = "^5"
CLEANSE_CHARACTER_RX = re.compile(r"[^A-Za-z0-9 ._-]")
CLEANSE_NONALPHA_RX = re.compile(r"[^A-Za-z]*")

QUERY_SPECIAL_CHARACTERS = set('+-&|!(){}[]^"~*?:\\/')

_GROUP_RX = re.compile(r"(\w+):\(\s(.*?)\s\)(?=\s|$)", re.S)


def escape_query(text: str) -> str:
    return "".join("\\" + ch if ch in QUERY_SPECIAL_CHARACTERS else ch for ch in text)


def cleanse_text(text: Optional[str]) -> str:
    if text is None:
        return ""
    return CLEANSE_CHARACTER_RX.sub(" ", text)


def _equals_ignore_case_and_non_alpha(left: str, right: str) -> bool:
    left = CLEANSE_NONALPHA_RX.sub("", left)
    right = CLEANSE_NONALPHA_RX.sub("", right)
    if not left or not right:
        return False
    return left.lower() == right.lower()


def _append_weighted_search(out: list, field: str, search_text: str, weightings: Optional[Iterable[str]]) -> bool:
    out.append(f" {field}:( ")
    tokens = cleanse_text(search_text).split()
    if not tokens:
        return False
    weighted_terms = sorted(weightings) if weightings else []
    if not weighted_terms:
        out.append(escape_query(" ".join(tokens)))
    else:
        for word in tokens:
            boosted = None
            for weighted in weighted_terms:
                weighted_clean = cleanse_text(weighted).strip()
                if _equals_ignore_case_and_non_alpha(word, weighted_clean):
                    boosted = escape_query(word) + WEIGHTING_BOOST
                    if word.lower() != weighted_clean.lower():
                        boosted += " " + escape_query(weighted_clean) + WEIGHTING_BOOST
                    break
            out.append(" ")
            out.append(boosted if boosted is not None else escape_query(word))
    out.append(" ) ")
    return True


def build_search(vendor: Optional[str], product: Optional[str],
                 vendor_weightings: Optional[Iterable[str]] = None,
                 product_weightings: Optional[Iterable[str]] = None) -> Optional[str]:
    """
    Builds the product AND vendor query. Returns None when either text is
    empty after cleansing, meaning there is nothing to search for.
    """
    out = []
    if not _append_weighted_search(out, FIELD_PRODUCT, product, product_weightings):
        return None
    out.append(" AND ")
    if not _append_weighted_search(out, FIELD_VENDOR, vendor, vendor_weightings):
        return None
    query = "".join(out)
    logger.debug(f"Built search query: {query}")
    return query


def _split_terms(group: str) -> list[tuple[str, float]]:
    terms = []
    current = []
    boost = None
    i = 0
    while i < len(group):
        ch = group[i]
        if ch == "\\" and i + 1 < len(group):
            current.append(group[i + 1])
            i += 2
            continue
        if ch.isspace():
            if current:
                terms.append(("".join(current), boost or 1.0))
            current, boost = [], None
        elif ch == "^":
            match = re.match(r"\^(\d+(?:\.\d+)?)", group[i:])
            if match:
                boost = float(match.group(1))
                i += len(match.group(0))
                continue
        else:
            current.append(ch)
        i += 1
    if current:
        terms.append(("".join(current), boost or 1.0))
    return terms


def parse_query(text: Optional[str]) -> dict[str, list[tuple[str, float]]]:
    """Parses a query from build_search into {field: [(term, boost), ...]}."""
    parsed: dict[str, list[tuple[str, float]]] = {}
    if not text:
        return parsed
    for field, group in _GROUP_RX.findall(text):
        parsed.setdefault(field.lower(), []).extend(_split_terms(group))
    return parsed
