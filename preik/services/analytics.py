import re
from collections import Counter
from datetime import date, timedelta
from typing import Dict, Iterable, List

STOP_WORDS = frozenset("""
hva hvem hvor hvordan hvorfor hvilke hvilken hvilket
jeg meg min mitt mine deg din ditt dine
han hun den det vi oss vår vårt våre
de dem deres seg sin sitt sine dere
har er var være blir bli ble blitt
kan kunne vil ville skal skulle må måtte
får fikk gjør gjøre gjorde gjort går gikk
og eller men som at om på av til fra
med for i etter før over under ved hos
en ei et denne dette disse
ikke bare også selv nå da så her der
hei hallo takk vennligst please
what the and for that this with you have
how can want need looking best good any
""".split())

TOP_TERMS = 15
MIN_TERM_LENGTH = 4
VOLUME_DAYS = 14

_NON_WORD_RE = re.compile(r"[^a-zæøå0-9\s-]")
_HYPHENS_RE = re.compile(r"-+")


def top_search_terms(queries: Iterable[str], limit: int = TOP_TERMS) -> List[Dict]:
    """Most frequent meaningful words across user questions."""
    counts: Counter = Counter()
    for q in queries:
        cleaned = _HYPHENS_RE.sub(" ", _NON_WORD_RE.sub("", (q or "").lower()))
        counts.update(w for w in cleaned.split() if len(w) >= MIN_TERM_LENGTH and w not in STOP_WORDS)
    # Counter.most_common keeps first-seen order for ties
    return [{"term": t, "count": c} for t, c in counts.most_common(limit)]


def daily_volume(days: Iterable[date], today: date, span: int = VOLUME_DAYS) -> List[Dict]:
    """Per-day counts for the last `span` days, oldest first, zero-filled."""
    counts = Counter(d.isoformat() for d in days)
    out = []
    for i in range(span - 1, -1, -1):
        key = (today - timedelta(days=i)).isoformat()
        out.append({"date": key, "count": counts.get(key, 0)})
    return out


def handled_rate(handled: int, total: int) -> float:
    # Percent with one decimal; an idle tenant counts as fully handled
    if total <= 0:
        return 100.0
    return round(handled / total * 100, 1)
