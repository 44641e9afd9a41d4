import asyncio
import datetime
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import pytz

from voice_relay.core.firebase import db_ref

logger = logging.getLogger(__name__)

SENTENCE_END = re.compile(r"[。！？.!?]")
EMPTY_TRANSCRIPT_SUMMARY = "Realtime conversation (no transcript available)"


def build_summary_text(transcript: str, preview_chars: int = 200) -> str:
    """First preview_chars of the transcript plus its sentence count."""
    if not transcript:
        return EMPTY_TRANSCRIPT_SUMMARY
    preview = transcript[:preview_chars]
    ellipsis = "..." if len(transcript) > preview_chars else ""
    sentences = len(SENTENCE_END.findall(transcript))
    return f"{preview}{ellipsis} ({sentences} sentences)"


@dataclass
class SessionSummary:
    session_id: str
    subject_id: str
    summary_text: str
    duration_seconds: int
    mode: str = "realtime"
    jlpt_level: Optional[str] = None
    grammar_prompt: Optional[str] = None
    created_at: str = field(default_factory=lambda: SessionHistory._now())

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "sessionId": self.session_id,
            "subjectId": self.subject_id,
            "mode": self.mode,
            "summaryText": self.summary_text,
            "durationSeconds": self.duration_seconds,
            "createdAt": self.created_at,
        }
        if self.jlpt_level:
            payload["jlptLevel"] = self.jlpt_level
        if self.grammar_prompt:
            payload["grammarPrompt"] = self.grammar_prompt
        return payload


class SessionHistory:
    """
    Persists end-of-session summaries to Firebase Realtime Database under
    users/{uid}/sessions/{sessionId}.
    """

    def save_summary_sync(self, summary: SessionSummary):
        ref = db_ref(f"users/{summary.subject_id}/sessions/{summary.session_id}")
        ref.set(summary.to_payload())
        db_ref(f"users/{summary.subject_id}/sessions/{summary.session_id}/updatedAt").set(self._now())

    async def save_summary(self, summary: SessionSummary):
        # firebase-admin is blocking; keep it off the event loop
        await asyncio.get_running_loop().run_in_executor(None, self.save_summary_sync, summary)
        logger.info("Saved summary for session %s (%ss)", summary.session_id, summary.duration_seconds)

    @staticmethod
    def _now() -> str:
        return datetime.datetime.now(tz=pytz.UTC).isoformat()
