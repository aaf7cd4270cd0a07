"""Generation history bookkeeping (best effort, never the billing record)."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.future import select

from database import async_session_maker
from models.generation_history import GenerationHistory
from services.credits import STORE_ERRORS
from services.errors import StoreUnavailable

logger = logging.getLogger(__name__)

STORED_TEXT_LIMIT = 500


def serialize_history(entry: GenerationHistory) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "task_id": entry.job_id,
        "text": entry.text,
        "voice_id": entry.voice_id,
        "voice_name": entry.voice_name,
        "audio_url": entry.audio_url,
        "characters": entry.characters_used,
        "credits_used": entry.credits_used,
        "status": entry.status,
        "date": entry.created_at.isoformat() if entry.created_at else None,
    }


class HistoryRecorder:
    def __init__(self, session_maker: Optional[async_sessionmaker] = None):
        self._session_maker = session_maker or async_session_maker

    async def append(
        self,
        *,
        account_id: str,
        job_id: str,
        text: str,
        voice_id: str,
        audio_url: str,
        characters_used: int,
        credits_used: int,
        voice_name: Optional[str] = None,
        settings: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """Write one history row; returns its id, or None when the write failed."""
        try:
            async with self._session_maker() as db:
                existing = await db.execute(
                    select(GenerationHistory.id).where(
                        GenerationHistory.account_id == account_id,
                        GenerationHistory.job_id == job_id,
                    )
                )
                existing_id = existing.scalar_one_or_none()
                if existing_id:
                    return existing_id

                entry = GenerationHistory(
                    account_id=account_id,
                    job_id=job_id,
                    text=text[:STORED_TEXT_LIMIT],
                    voice_id=voice_id,
                    voice_name=voice_name or voice_id,
                    audio_url=audio_url,
                    characters_used=int(characters_used),
                    credits_used=int(credits_used),
                    settings=settings or {},
                    status="completed",
                )
                db.add(entry)
                await db.commit()
                return entry.id
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Failed to save generation history for job %s: %s", job_id, exc)
            return None

    async def list_recent(self, account_id: str, limit: int = 20) -> List[GenerationHistory]:
        try:
            async with self._session_maker() as db:
                result = await db.execute(
                    select(GenerationHistory)
                    .where(GenerationHistory.account_id == account_id)
                    .order_by(GenerationHistory.created_at.desc())
                    .limit(max(int(limit), 1))
                )
                return list(result.scalars().all())
        except STORE_ERRORS as exc:
            logger.error("History store unavailable for %s: %s", account_id, exc)
            raise StoreUnavailable() from exc
