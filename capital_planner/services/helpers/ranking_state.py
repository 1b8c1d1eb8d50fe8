"""
Ranking-cache staleness marker.

Criteria and score mutations call ``mark_rankings_stale`` inside their own
transaction; ``RankingService.calculate_all_project_scores`` calls
``mark_rankings_rebuilt``. Staleness is a sequence comparison, not a clock
comparison, so it is immune to timestamp precision of the store.
"""

from datetime import datetime, timezone

from sqlalchemy import select

from capital_planner.models.prioritization import RankingState

_STATE_ID = 1


def get_ranking_state(session, create=True) -> RankingState | None:
    state = session.execute(
        select(RankingState).where(RankingState.id == _STATE_ID)
    ).scalar_one_or_none()
    if state is None and create:
        state = RankingState(id=_STATE_ID, mutation_seq=0, rebuilt_seq=None)
        session.add(state)
        session.flush()
    return state


def mark_rankings_stale(session) -> None:
    state = get_ranking_state(session)
    state.mutation_seq = (state.mutation_seq or 0) + 1
    state.last_mutation_at = datetime.now(timezone.utc)
    session.flush()


def mark_rankings_rebuilt(session) -> RankingState:
    state = get_ranking_state(session)
    state.rebuilt_seq = state.mutation_seq or 0
    state.last_rebuilt_at = datetime.now(timezone.utc)
    session.flush()
    return state
