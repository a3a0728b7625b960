"""Entry point the application talks to: user, question and session operations.

``StorageService`` wraps whichever backend the deployment uses and adds the
parts that don't depend on where data lives: validation, statistics, backup
export/import and practice-pool selection. Every entity operation takes the
caller's ``UserContext``; without an active context it does nothing.
"""

import logging
import math
import random
from typing import Dict, List, Optional, Tuple

from constants import (
    BACKUP_VERSION,
    CATEGORIES,
    DEFAULT_AVATAR_URL,
    UNANSWERED,
)
from errors import BackupFormatError
from local_backend import LocalBackend
from models import (
    UserContext,
    day_id,
    new_id,
    now_ms,
    practice_count,
    public_user,
    validate_question,
)
from remote_backend import RemoteBackend
from settings import Settings, load_settings


logger = logging.getLogger(__name__)

TIME_FILTERS = {"all", "today", "yesterday", "3days", "week", "month"}


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _has_id(record) -> bool:
    return isinstance(record, dict) and isinstance(record.get("id"), str) and bool(record["id"].strip())


def is_valid_backup(payload) -> bool:
    """Check the whole backup before anything is written."""
    if not isinstance(payload, dict) or not isinstance(payload.get("questions"), list):
        return False
    sessions = payload.get("sessions")
    if sessions is not None and not isinstance(sessions, list):
        return False
    return all(_has_id(q) for q in payload["questions"]) and all(_has_id(s) for s in sessions or [])


def matches_time_filter(created_at: int, time_filter: str, today: int) -> bool:
    if time_filter == "all":
        return True
    diff = today - day_id(created_at)
    if time_filter == "today":
        return diff == 0
    if time_filter == "yesterday":
        return diff == 1
    if time_filter == "3days":
        return 0 <= diff <= 2
    if time_filter == "week":
        return 0 <= diff <= 6
    if time_filter == "month":
        return 0 <= diff <= 29
    raise ValueError(f"Unknown time filter: {time_filter}")


def build_session(
    questions: List[Dict],
    answers: Dict[str, int],
    durations: Optional[Dict[str, float]] = None,
    now: Optional[int] = None,
) -> Dict:
    """Turn a finished practice run into a session record."""
    durations = durations or {}
    details = []
    correct = 0
    for question in questions:
        answer = answers.get(question["id"], UNANSWERED)
        is_correct = answer != UNANSWERED and answer == question.get("correctAnswer")
        correct += int(is_correct)
        details.append(
            {
                "questionId": question["id"],
                "userAnswer": answer,
                "isCorrect": is_correct,
                "duration": round_half_up(durations.get(question["id"], 0)),
            }
        )
    return {
        "id": new_id(),
        "date": now if now is not None else now_ms(),
        "questionIds": [q["id"] for q in questions],
        "score": round_half_up(correct * 100 / len(questions)) if questions else 0,
        "totalDuration": round_half_up(sum(durations.get(q["id"], 0) for q in questions)),
        "details": details,
    }


class StorageService:
    def __init__(self, backend) -> None:
        self.backend = backend

    @staticmethod
    def _user_id(ctx: Optional[UserContext]) -> Optional[str]:
        if ctx is None or not ctx.active:
            return None
        return ctx.user_id

    # --- identity ---

    def register(self, username: str, password: str, nickname: str) -> Tuple[Dict, Optional[UserContext]]:
        user = {
            "id": new_id(),
            "username": username,
            "password": password,
            "nickname": nickname or username,
            "avatar": DEFAULT_AVATAR_URL.format(seed=username),
        }
        result = self.backend.register(user)
        if result.get("success") and result.get("user"):
            return result, UserContext(public_user(result["user"]))
        return result, None

    def login(self, username: str, password: str) -> Tuple[Dict, Optional[UserContext]]:
        result = self.backend.login(username, password)
        if result.get("success") and result.get("user"):
            return result, UserContext(public_user(result["user"]))
        return result, None

    def logout(self, ctx: Optional[UserContext]) -> None:
        if ctx is not None:
            ctx.invalidate()

    def save_user(self, ctx: Optional[UserContext], changes: Dict) -> Dict:
        user_id = self._user_id(ctx)
        if user_id is None:
            return {"success": False, "message": "未登录"}
        updated = dict(ctx.user)
        updated.update(changes)
        updated["id"] = user_id
        result = self.backend.update_user(updated)
        if result.get("success"):
            profile = public_user(updated)
            if result.get("externalToken"):
                profile["externalToken"] = result["externalToken"]
            ctx.user = profile
        return result

    # --- questions ---

    def get_questions(self, ctx: Optional[UserContext], include_deleted: bool = False) -> List[Dict]:
        user_id = self._user_id(ctx)
        if user_id is None:
            return []
        questions = self.backend.get_questions(user_id)
        if include_deleted:
            return questions
        return [q for q in questions if not q.get("deletedAt")]

    def get_deleted_questions(self, ctx: Optional[UserContext]) -> List[Dict]:
        return [q for q in self.get_questions(ctx, include_deleted=True) if q.get("deletedAt")]

    def get_question(self, ctx: Optional[UserContext], question_id: str) -> Optional[Dict]:
        user_id = self._user_id(ctx)
        if user_id is None:
            return None
        return self.backend.get_question(user_id, question_id)

    def save_question(self, ctx: Optional[UserContext], question: Dict) -> Dict:
        user_id = self._user_id(ctx)
        if user_id is None:
            return {"success": False, "message": "未登录"}
        message = validate_question(question)
        if message:
            return {"success": False, "message": message}

        document = dict(question)
        document.setdefault("createdAt", now_ms())
        document.setdefault("materials", [])
        document.setdefault("mistakeCount", 0)
        document.setdefault("correctCount", 0)
        document["tags"] = list(dict.fromkeys(document.get("tags") or []))
        self.backend.save_question(user_id, document)
        return {"success": True, "id": document["id"]}

    def delete_question(self, ctx: Optional[UserContext], question_id: str, hard: bool = False) -> None:
        user_id = self._user_id(ctx)
        if user_id is not None:
            self.backend.delete_question(user_id, question_id, hard)

    def restore_question(self, ctx: Optional[UserContext], question_id: str) -> None:
        user_id = self._user_id(ctx)
        if user_id is not None:
            self.backend.restore_question(user_id, question_id)

    def toggle_mastered(self, ctx: Optional[UserContext], question_id: str) -> Optional[bool]:
        question = self.get_question(ctx, question_id)
        if question is None:
            return None
        question["isMastered"] = not question.get("isMastered")
        self.backend.save_question(ctx.user_id, question)
        return question["isMastered"]

    def hydrate_question(self, ctx: Optional[UserContext], question: Dict) -> Dict:
        user_id = self._user_id(ctx)
        if user_id is None:
            return question
        return self.backend.hydrate_question_images(user_id, question)

    # --- sessions ---

    def get_sessions(self, ctx: Optional[UserContext]) -> List[Dict]:
        user_id = self._user_id(ctx)
        return self.backend.get_sessions(user_id) if user_id is not None else []

    def save_session(self, ctx: Optional[UserContext], session: Dict) -> None:
        user_id = self._user_id(ctx)
        if user_id is not None:
            self.backend.save_session(user_id, session)

    def delete_session(self, ctx: Optional[UserContext], session_id: str) -> None:
        user_id = self._user_id(ctx)
        if user_id is not None:
            self.backend.delete_session(user_id, session_id)

    # --- statistics ---

    def get_stats(self, ctx: Optional[UserContext], now: Optional[int] = None) -> Dict:
        """Counts over active questions, bucketed by UTC+8 creation day.

        The week bucket covers today and the six days before it, the month
        bucket today and the 29 days before it.
        """
        today = day_id(now if now is not None else now_ms())
        stats = {
            "total": 0,
            "masteredCount": 0,
            "todayMistakes": 0,
            "yesterdayMistakes": 0,
            "weekMistakes": 0,
            "monthMistakes": 0,
            "todayPracticeCount": 0,
            "byCategory": {category: 0 for category in CATEGORIES},
        }

        for question in self.get_questions(ctx):
            stats["total"] += 1
            if question.get("isMastered"):
                stats["masteredCount"] += 1
            if question.get("category") in stats["byCategory"]:
                stats["byCategory"][question["category"]] += 1

            diff = today - day_id(question.get("createdAt") or 0)
            if diff == 0:
                stats["todayMistakes"] += 1
            elif diff == 1:
                stats["yesterdayMistakes"] += 1
            if 0 <= diff <= 6:
                stats["weekMistakes"] += 1
            if 0 <= diff <= 29:
                stats["monthMistakes"] += 1

        for session in self.get_sessions(ctx):
            if day_id(session.get("date") or 0) == today:
                stats["todayPracticeCount"] += len(session.get("questionIds") or [])
        return stats

    # --- backup ---

    def export_backup(self, ctx: Optional[UserContext], now: Optional[int] = None) -> Optional[Dict]:
        user_id = self._user_id(ctx)
        if user_id is None:
            return None
        questions = [
            self.backend.hydrate_question_images(user_id, q)
            for q in self.backend.get_questions(user_id)
        ]
        return {
            "version": BACKUP_VERSION,
            "exportedAt": now if now is not None else now_ms(),
            "user": public_user(ctx.user),
            "questions": questions,
            "sessions": self.backend.get_sessions(user_id),
        }

    def restore_backup(self, ctx: Optional[UserContext], payload: Dict) -> Dict:
        """Merge a backup into the current user's data; records upsert by id.

        Sessions are restored without touching question counters, which the
        backed-up questions already carry.
        """
        user_id = self._user_id(ctx)
        if user_id is None or not is_valid_backup(payload):
            raise BackupFormatError("无效备份文件")

        for question in payload["questions"]:
            self.backend.save_question(user_id, question)
        sessions = payload.get("sessions") or []
        for session in sessions:
            self.backend.save_session(user_id, session, skip_stats_update=True)
        logger.info(
            "Restored %d questions and %d sessions for %s",
            len(payload["questions"]),
            len(sessions),
            user_id,
        )
        return {"questions": len(payload["questions"]), "sessions": len(sessions)}

    # --- practice ---

    def select_practice_pool(
        self,
        ctx: Optional[UserContext],
        category: Optional[str] = None,
        sub_category: Optional[str] = None,
        tag: Optional[str] = None,
        accuracy_min: float = 0,
        accuracy_max: float = 100,
        time_filter: str = "all",
        count: Optional[int] = None,
        rng: Optional[random.Random] = None,
        now: Optional[int] = None,
    ) -> List[Dict]:
        """Pick active, unmastered questions, least-practiced first."""
        if time_filter not in TIME_FILTERS:
            raise ValueError(f"Unknown time filter: {time_filter}")
        today = day_id(now if now is not None else now_ms())
        pool = []
        for question in self.get_questions(ctx):
            if question.get("isMastered"):
                continue
            if category and question.get("category") != category:
                continue
            if sub_category and question.get("subCategory") != sub_category:
                continue
            if tag and tag not in (question.get("tags") or []):
                continue
            accuracy = question.get("accuracy") or 0
            if not accuracy_min <= accuracy <= accuracy_max:
                continue
            if not matches_time_filter(question.get("createdAt") or 0, time_filter, today):
                continue
            pool.append(question)

        # Shuffle first so the stable sort breaks ties randomly.
        (rng or random).shuffle(pool)
        pool.sort(key=practice_count)
        return pool if count is None else pool[:count]


def create_storage(settings: Optional[Settings] = None) -> StorageService:
    settings = settings or load_settings()
    if settings.cloud_enabled:
        backend = RemoteBackend(settings.api_url, timeout=settings.request_timeout)
    else:
        backend = LocalBackend(settings.local_db_path, image_threshold=settings.image_threshold)
    logger.info("Using %s storage", settings.storage_mode)
    return StorageService(backend)
