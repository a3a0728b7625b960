"""Fully local persistence: SQLite documents plus an image payload table."""

import json
import logging
import re
from functools import partial
from typing import Callable, Dict, List, Optional, Set

from constants import (
    ANALYSIS_FIELD_TAG,
    LEGACY_QUESTIONS_KEY,
    LEGACY_SESSIONS_KEY,
    LEGACY_USERS_KEY,
    RTE_FIELD_TAG,
)
from db import DbPath, init_db
from document_store import DocumentRepository, KeyValueStore, MigrationLog
from errors import StorageError
from models import (
    DeferredMaterial,
    apply_session_detail,
    externalize_images,
    hash_password,
    is_image_ref,
    material_key,
    new_id,
    notes_image_key,
    now_ms,
    public_user,
    read_material_slots,
    verify_password,
)
from payload_store import PayloadStore
from rich_content import RichContentExternalizer, referenced_keys
from settings import DEFAULT_IMAGE_THRESHOLD


logger = logging.getLogger(__name__)

LEGACY_DATA_MIGRATION = "legacy_kv_v1"
LEGACY_USERS_MIGRATION = "legacy_users_v1"
ALL_OWNERS = "*"


class LocalBackend:
    def __init__(
        self,
        db_path: DbPath,
        image_threshold: int = DEFAULT_IMAGE_THRESHOLD,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        init_db(db_path)
        self.db_path = db_path
        self.image_threshold = image_threshold
        self.clock = clock
        self.payloads = PayloadStore(db_path)
        self.questions = DocumentRepository(db_path, "questions", sort_field="createdAt")
        self.sessions = DocumentRepository(db_path, "sessions", sort_field="date")
        self.users = DocumentRepository(db_path, "users", sort_field="createdAt")
        self.legacy = KeyValueStore(db_path)
        self.migrations = MigrationLog(db_path)
        self.externalizer = RichContentExternalizer(self.payloads, image_threshold, clock=clock)
        self._migrated_owners: Set[str] = set()
        self.migrate_legacy_users()

    # --- users ---

    def _find_user(self, username: str) -> Optional[Dict]:
        for user in self.users.get_all():
            if user.get("username") == username:
                return user
        return None

    def register(self, user: Dict) -> Dict:
        username = str(user.get("username") or "").strip()
        password = user.get("password") or ""
        if not username or not password:
            return {"success": False, "message": "用户名和密码不能为空"}
        if self._find_user(username) is not None:
            return {"success": False, "message": "用户名已存在"}

        stored = dict(user)
        stored["id"] = user.get("id") or new_id()
        stored["username"] = username
        stored["password"] = hash_password(password)
        stored["externalToken"] = user.get("externalToken") or new_id()
        stored.setdefault("createdAt", self.clock())
        self.users.put(stored)
        logger.info("Registered local user %s", stored["id"])
        return {"success": True, "message": "注册成功", "user": public_user(stored)}

    def login(self, username: str, password: str) -> Dict:
        user = self._find_user(username)
        if user is None or not verify_password(user.get("password"), password):
            return {"success": False, "message": "用户名或密码错误"}
        return {"success": True, "message": "登录成功", "user": public_user(user)}

    def update_user(self, user: Dict) -> Dict:
        existing = self.users.get(user["id"])
        if existing is None:
            return {"success": False, "message": "用户不存在"}

        updated = dict(existing)
        for field_name in ("nickname", "avatar"):
            if field_name in user:
                updated[field_name] = user[field_name]
        password = user.get("password")
        if password and password != existing.get("password"):
            updated["password"] = hash_password(password)
        updated["externalToken"] = user.get("externalToken") or existing.get("externalToken") or new_id()
        self.users.put(updated)
        return {"success": True, "externalToken": updated["externalToken"], "user": public_user(updated)}

    # --- questions ---

    def _owned(self, document: Optional[Dict], owner_id: str) -> Optional[Dict]:
        if document is None or document.get("userId") not in (None, owner_id):
            return None
        return document

    def get_questions(self, owner_id: str) -> List[Dict]:
        self.migrate_legacy_data(owner_id)
        questions = self.questions.get_all(owner_id)
        return sorted(questions, key=lambda q: q.get("createdAt") or 0, reverse=True)

    def get_question(self, owner_id: str, question_id: str) -> Optional[Dict]:
        self.migrate_legacy_data(owner_id)
        return self._owned(self.questions.get(question_id), owner_id)

    def _check_owner(self, repo: DocumentRepository, entity_id: str, owner_id: str) -> None:
        existing = repo.get(entity_id)
        if existing is not None and self._owned(existing, owner_id) is None:
            raise StorageError(f"{entity_id} belongs to another user")

    def save_question(self, owner_id: str, question: Dict) -> None:
        question_id = question["id"]
        self._check_owner(self.questions, question_id, owner_id)
        note_text = self.externalizer.externalize(question.get("noteText"), question_id, RTE_FIELD_TAG)
        analysis = self.externalizer.externalize(question.get("analysis"), question_id, ANALYSIS_FIELD_TAG)

        light, payloads = externalize_images(
            question,
            self.image_threshold,
            partial(material_key, question_id),
            notes_image_key(question_id),
        )
        for key, data in payloads.items():
            self.payloads.put(key, data)

        light["userId"] = owner_id
        light["noteText"] = note_text
        light["analysis"] = analysis
        self.questions.put(light, owner_id=owner_id)
        self._prune_payloads(light)

    def _owned_payload_keys(self, question_id: str) -> Set[str]:
        # Another question's id may extend this one's, so only the exact key
        # shapes this question writes count as its own.
        owned = re.compile(
            re.escape(question_id)
            + rf"_(?:mat_\d+|note|{RTE_FIELD_TAG}_\d+_\d+|{ANALYSIS_FIELD_TAG}_\d+_\d+)"
        )
        return {key for key in self.payloads.keys_with_prefix(f"{question_id}_") if owned.fullmatch(key)}

    def _prune_payloads(self, light: Dict) -> None:
        """Drop payloads of this question that the stored document no longer references."""
        question_id = light["id"]
        keep = set(referenced_keys(light.get("noteText"), RTE_FIELD_TAG))
        keep |= set(referenced_keys(light.get("analysis"), ANALYSIS_FIELD_TAG))
        for slot in read_material_slots(light, partial(material_key, question_id)):
            if isinstance(slot, DeferredMaterial):
                keep.add(slot.key)
        if is_image_ref(light.get("notesImage")):
            keep.add(notes_image_key(question_id))

        stale = self._owned_payload_keys(question_id) - keep
        if stale:
            self.payloads.delete_many(stale)
            logger.debug("Pruned %d stale payloads of question %s", len(stale), question_id)

    def delete_question(self, owner_id: str, question_id: str, hard: bool = False) -> None:
        question = self.questions.get(question_id)
        if question is not None and self._owned(question, owner_id) is None:
            return

        if hard:
            self.questions.delete(question_id)
            deleted = self.payloads.delete_many(self._owned_payload_keys(question_id))
            logger.info("Hard-deleted question %s and %d payloads", question_id, deleted)
            return

        if question is not None:
            question["deletedAt"] = self.clock()
            self.questions.put(question, owner_id=owner_id)

    def restore_question(self, owner_id: str, question_id: str) -> None:
        question = self._owned(self.questions.get(question_id), owner_id)
        if question is None:
            return
        question.pop("deletedAt", None)
        self.questions.put(question, owner_id=owner_id)

    def _load_payload(self, key: str) -> str:
        data = self.payloads.get(key)
        if data is None:
            logger.warning("Missing image payload %s", key)
            return ""
        return data

    def hydrate_question_images(self, owner_id: str, question: Dict) -> Dict:
        """Return a copy of ``question`` with every image reference resolved."""
        hydrated = dict(question)
        question_id = question["id"]

        slots = read_material_slots(question, partial(material_key, question_id))
        if any(isinstance(slot, DeferredMaterial) for slot in slots):
            hydrated["materials"] = [
                self._load_payload(slot.key) if isinstance(slot, DeferredMaterial) else slot.data
                for slot in slots
            ]

        if is_image_ref(question.get("notesImage")):
            hydrated["notesImage"] = self._load_payload(notes_image_key(question_id))

        if question.get("noteText"):
            hydrated["noteText"] = self.externalizer.inline(question["noteText"], RTE_FIELD_TAG)
        if question.get("analysis"):
            hydrated["analysis"] = self.externalizer.inline(question["analysis"], ANALYSIS_FIELD_TAG)
        return hydrated

    # --- sessions ---

    def get_sessions(self, owner_id: str) -> List[Dict]:
        self.migrate_legacy_data(owner_id)
        sessions = self.sessions.get_all(owner_id)
        return sorted(sessions, key=lambda s: s.get("date") or 0, reverse=True)

    def save_session(self, owner_id: str, session: Dict, skip_stats_update: bool = False) -> None:
        self._check_owner(self.sessions, session["id"], owner_id)
        already_saved = self.sessions.exists(session["id"])
        self.sessions.put(dict(session, userId=owner_id), owner_id=owner_id)
        if skip_stats_update:
            return
        if already_saved:
            logger.info("Session %s was already recorded; counters left unchanged", session["id"])
            return

        practiced_at = self.clock()
        for detail in session.get("details") or []:
            question = self._owned(self.questions.get(detail.get("questionId")), owner_id)
            if question is None:
                continue
            updated = apply_session_detail(question, bool(detail.get("isCorrect")), practiced_at)
            self.questions.put(updated, owner_id=owner_id)

    def delete_session(self, owner_id: str, session_id: str) -> None:
        if self._owned(self.sessions.get(session_id), owner_id) is not None:
            self.sessions.delete(session_id)

    # --- legacy migration ---

    def _load_legacy_list(self, key: str) -> Optional[List[Dict]]:
        raw = self.legacy.get(key)
        if raw is None:
            return None
        try:
            records = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Legacy data under %s is not valid JSON; skipping", key)
            return None
        if not isinstance(records, list):
            logger.warning("Legacy data under %s is not a list; skipping", key)
            return None
        return [r for r in records if isinstance(r, dict) and r.get("id")]

    def migrate_legacy_users(self) -> None:
        if self.migrations.is_applied(LEGACY_USERS_MIGRATION, ALL_OWNERS):
            return
        users = self._load_legacy_list(LEGACY_USERS_KEY) or []
        for user in users:
            if self.users.exists(user["id"]):
                continue
            stored = dict(user)
            if stored.get("password"):
                stored["password"] = hash_password(stored["password"])
            self.users.put(stored)
        if users:
            logger.info("Migrated %d legacy users", len(users))
        self.migrations.mark_applied(LEGACY_USERS_MIGRATION, ALL_OWNERS)

    def migrate_legacy_data(self, owner_id: str) -> None:
        """Move this owner's legacy flat records into the document tables.

        Completion is recorded in the database, so it runs once per owner and
        resumes after an interrupted run. Re-saving is an upsert, so replaying
        a partially migrated batch is harmless.
        """
        if owner_id in self._migrated_owners:
            return
        if not self.migrations.is_applied(LEGACY_DATA_MIGRATION, owner_id):
            questions_key = f"{LEGACY_QUESTIONS_KEY}_{owner_id}"
            questions = self._load_legacy_list(questions_key)
            if questions is not None:
                for question in questions:
                    self.save_question(owner_id, question)
                self.legacy.remove(questions_key)
                logger.info("Migrated %d legacy questions for %s", len(questions), owner_id)

            sessions_key = f"{LEGACY_SESSIONS_KEY}_{owner_id}"
            sessions = self._load_legacy_list(sessions_key)
            if sessions is not None:
                for session in sessions:
                    self.sessions.put(dict(session, userId=owner_id), owner_id=owner_id)
                self.legacy.remove(sessions_key)
                logger.info("Migrated %d legacy sessions for %s", len(sessions), owner_id)

            self.migrations.mark_applied(LEGACY_DATA_MIGRATION, owner_id)
        self._migrated_owners.add(owner_id)
