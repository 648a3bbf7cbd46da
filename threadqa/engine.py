"""
Question pipeline shared by every front end.

Resolves the thread's agent session, decides whether the agent needs the full
instructions again, runs the exchange with throttled progress, and records a
compaction for the next turn.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import aiosqlite

from threadqa.agent.client import FilePart
from threadqa.config import COMPACTION_GRACE, EXCHANGE_TIMEOUT, PROGRESS_INTERVAL
from threadqa.db import crud
from threadqa.exchange import ExchangeResult, run_exchange
from threadqa.progress import ProgressThrottler, Reporter
from threadqa.prompt import ContextSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuestionOutcome:
    session_id: str
    is_new: bool
    result: ExchangeResult


async def handle_question(
    db: aiosqlite.Connection,
    runtime,
    thread_key: str,
    question: str,
    ctx: Optional[ContextSnapshot] = None,
    report: Optional[Reporter] = None,
    *,
    agent: Optional[str] = None,
    files: Sequence[FilePart] = (),
    progress_interval: float = PROGRESS_INTERVAL,
    timeout: float = EXCHANGE_TIMEOUT,
    grace: float = COMPACTION_GRACE,
) -> QuestionOutcome:
    session_id, is_new = await crud.session_get_or_create(db, thread_key, runtime)

    # A compaction during the previous answer means the agent may have lost its
    # behavioral constraints: send the full instructions again, then clear the flag.
    needs_full_context = is_new or await crud.session_is_compacted(db, thread_key)
    if not is_new and needs_full_context:
        await crud.session_set_compacted(db, thread_key, False)
        logger.info(f"Re-sending full instructions to session {session_id} after compaction")

    progress = ProgressThrottler(report, interval=progress_interval) if report else None
    try:
        result = await run_exchange(
            runtime,
            session_id,
            question,
            ctx,
            progress.update if progress else None,
            needs_full_context=needs_full_context,
            agent=agent,
            files=files,
            timeout=timeout,
            grace=grace,
        )
    finally:
        if progress:
            progress.stop()

    if result.compacted:
        await crud.session_set_compacted(db, thread_key, True)

    if progress:
        await progress.wait_delivered()
    return QuestionOutcome(session_id=session_id, is_new=is_new, result=result)
