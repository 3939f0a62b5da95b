"""Have/want matching between collectors."""
from __future__ import annotations

from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from .database import Database
from .models import Match, MatchCard, TrustGrade
from .trust import meets_grade


async def find_matches(
    db: Database,
    user_id: str,
    *,
    min_trust_grade: Optional[TrustGrade] = None,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[List[Match], int]:
    """Find users whose collections overlap with ``user_id``'s wants and haves.

    A candidate either has a card the user wants or wants a card the user
    has. Candidates below ``min_trust_grade`` are dropped, with a missing grade
    treated as ``U``. Returns one page of matches, best overlap first, and the
    total number of matches before paging.
    """

    async with db.connect() as conn:
        cursor = await conn.execute(
            "SELECT h.user_id, h.card_id, c.name FROM have_cards h\n"
            "JOIN cards c ON c.card_id = h.card_id\n"
            "JOIN want_cards w ON w.card_id = h.card_id AND w.user_id = ?\n"
            "WHERE h.user_id <> ?",
            (user_id, user_id),
        )
        they_have = await cursor.fetchall()
        cursor = await conn.execute(
            "SELECT w.user_id, w.card_id, c.name FROM want_cards w\n"
            "JOIN cards c ON c.card_id = w.card_id\n"
            "JOIN have_cards h ON h.card_id = w.card_id AND h.user_id = ?\n"
            "WHERE w.user_id <> ?",
            (user_id, user_id),
        )
        they_want = await cursor.fetchall()

    gives: Dict[str, List[MatchCard]] = defaultdict(list)
    takes: Dict[str, List[MatchCard]] = defaultdict(list)
    for candidate, card_id, name in they_have:
        gives[candidate].append(MatchCard(card_id=card_id, card_name=name))
    for candidate, card_id, name in they_want:
        takes[candidate].append(MatchCard(card_id=card_id, card_name=name))

    candidates = set(gives) | set(takes)
    if not candidates:
        return [], 0

    users = await db.get_users(candidates)
    matches: List[Match] = []
    for candidate in candidates:
        user = users.get(candidate)
        grade = user.trust_grade if user else None
        if not meets_grade(grade, min_trust_grade):
            continue
        matches.append(
            Match(
                user_id=candidate,
                display_name=user.display_name if user else candidate,
                trust_grade=grade or TrustGrade.U,
                trust_score=user.trust_score if user else None,
                they_have_i_want=sorted(gives[candidate], key=lambda card: card.card_name),
                i_have_they_want=sorted(takes[candidate], key=lambda card: card.card_name),
            )
        )

    matches.sort(key=lambda match: (-match.match_score, -match.trust_grade.rank, match.user_id))
    return matches[offset : offset + limit], len(matches)
