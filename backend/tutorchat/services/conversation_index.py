"""
Conversation list view: date buckets without a query, ranked hits with one.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from ..schemas.conversation import (
    ConversationGroup,
    ConversationListView,
    ConversationResponse,
    ConversationSearchHit,
    HighlightSpan,
)


TODAY = "Today"
YESTERDAY = "Yesterday"
THIS_WEEK = "This Week"
THIS_MONTH = "This Month"
OLDER = "Older"

BUCKETS = (TODAY, YESTERDAY, THIS_WEEK, THIS_MONTH, OLDER)


def bucket_for(last_message_at: datetime, now: datetime) -> str:
    """Bucket label, using calendar days in ``now``'s timezone."""
    today = now.date()
    day = last_message_at.astimezone(now.tzinfo).date() if now.tzinfo else last_message_at.date()
    if day >= today:
        return TODAY
    if day == today - timedelta(days=1):
        return YESTERDAY
    if day > today - timedelta(days=7):
        return THIS_WEEK
    if day > today - timedelta(days=30):
        return THIS_MONTH
    return OLDER


def _newest_first(items: Sequence[ConversationResponse]) -> List[ConversationResponse]:
    return sorted(items, key=lambda c: (c.last_message_at, c.id), reverse=True)


def group_conversations(items: Sequence[ConversationResponse], now: datetime) -> List[ConversationGroup]:
    grouped: Dict[str, List[ConversationResponse]] = {label: [] for label in BUCKETS}
    for item in items:
        grouped[bucket_for(item.last_message_at, now)].append(item)
    return [
        ConversationGroup(label=label, conversations=_newest_first(grouped[label]))
        for label in BUCKETS
        if grouped[label]
    ]


def highlight_spans(text: Optional[str], query: str) -> List[HighlightSpan]:
    """Every non-overlapping case-insensitive occurrence of ``query`` in ``text``."""
    if not text or not query:
        return []
    haystack = text.lower()
    needle = query.lower()
    spans = []
    start = haystack.find(needle)
    while start != -1:
        spans.append(HighlightSpan(start=start, end=start + len(needle)))
        start = haystack.find(needle, start + len(needle))
    return spans


def _display_name(item: ConversationResponse) -> str:
    return item.other_participant_name or item.title or ""


def search_conversations(items: Sequence[ConversationResponse], query: str) -> List[ConversationSearchHit]:
    """Ranked: name prefix, then name substring, then snippet substring; recency breaks ties."""
    query = query.strip()
    if not query:
        return []
    needle = query.lower()

    ranked = []
    for item in items:
        name = _display_name(item)
        name_spans = highlight_spans(name, query)
        snippet_spans = highlight_spans(item.last_message_snippet, query)
        if name.lower().startswith(needle):
            rank = 0
        elif name_spans:
            rank = 1
        elif snippet_spans:
            rank = 2
        else:
            continue
        ranked.append((rank, item, name_spans, snippet_spans))

    ranked.sort(key=lambda r: (r[0], -r[1].last_message_at.timestamp(), r[1].id))
    return [
        ConversationSearchHit(conversation=item, name_highlights=name_spans, snippet_highlights=snippet_spans)
        for _, item, name_spans, snippet_spans in ranked
    ]


def build_view(items: Sequence[ConversationResponse], query: Optional[str], now: datetime) -> ConversationListView:
    """Grouped view for an empty query, flat ranked hits otherwise."""
    if query and query.strip():
        return ConversationListView(query=query.strip(), hits=search_conversations(items, query))
    return ConversationListView(groups=group_conversations(items, now))
