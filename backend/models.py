"""Document helpers for users, questions and practice sessions.

Entities travel as JSON-shaped dicts with camelCase keys, the same shape the
HTTP API and backup files use. The helpers here keep the rules about those
dicts in one place: material slot states, image externalization planning,
validation and the public view of a user.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple, Union

from werkzeug.security import check_password_hash, generate_password_hash

from constants import (
    CATEGORIES,
    DAY_MS,
    DAY_OFFSET_MS,
    IMAGE_REF,
    IMAGE_REF_MARKERS,
    SUB_CATEGORY_MAP,
)


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


def day_id(timestamp_ms: int) -> int:
    """Index of the UTC+8 calendar day containing ``timestamp_ms``."""
    return (int(timestamp_ms) + DAY_OFFSET_MS) // DAY_MS


def is_image_ref(value) -> bool:
    return isinstance(value, str) and value in IMAGE_REF_MARKERS


def exceeds_threshold(value, threshold: int) -> bool:
    return isinstance(value, str) and len(value) >= threshold


def material_key(question_id: str, index: int) -> str:
    return f"{question_id}_mat_{index}"


def notes_image_key(question_id: str) -> str:
    return f"{question_id}_note"


@dataclass(frozen=True)
class InlineMaterial:
    data: str

    def to_document(self) -> str:
        return self.data


@dataclass(frozen=True)
class DeferredMaterial:
    key: str

    def to_document(self) -> str:
        return IMAGE_REF


MaterialSlot = Union[InlineMaterial, DeferredMaterial]


def read_material_slots(
    question: Dict,
    key_for: Callable[[int], str],
) -> List[MaterialSlot]:
    slots: List[MaterialSlot] = []
    for index, value in enumerate(question.get("materials") or []):
        if is_image_ref(value):
            slots.append(DeferredMaterial(key_for(index)))
        else:
            slots.append(InlineMaterial(value if isinstance(value, str) else ""))
    return slots


def externalize_images(
    question: Dict,
    threshold: int,
    key_for_material: Callable[[int], str],
    notes_key: str,
) -> Tuple[Dict, Dict[str, str]]:
    """Split oversized materials and notesImage out of a question.

    Returns the light document and the payloads to store, keyed by storage
    key. Slots that already hold the image sentinel keep it and produce no
    payload.
    """
    payloads: Dict[str, str] = {}
    light = dict(question)

    light_materials: List[str] = []
    for index, slot in enumerate(read_material_slots(question, key_for_material)):
        if isinstance(slot, InlineMaterial) and exceeds_threshold(slot.data, threshold):
            key = key_for_material(index)
            payloads[key] = slot.data
            slot = DeferredMaterial(key)
        light_materials.append(slot.to_document())
    light["materials"] = light_materials

    notes_image = question.get("notesImage")
    if is_image_ref(notes_image):
        light["notesImage"] = IMAGE_REF
    elif exceeds_threshold(notes_image, threshold):
        payloads[notes_key] = notes_image
        light["notesImage"] = IMAGE_REF
    return light, payloads


def has_image_refs(question: Dict) -> bool:
    if any(is_image_ref(m) for m in question.get("materials") or []):
        return True
    return is_image_ref(question.get("notesImage"))


def validate_question(question: Dict) -> Optional[str]:
    """Return an error message for an unusable question, or None."""
    if not isinstance(question, dict):
        return "题目格式无效"
    if not isinstance(question.get("id"), str) or not question["id"].strip():
        return "题目缺少 id"
    category = question.get("category")
    if category not in CATEGORIES:
        return f"未知分类: {category}"
    sub_category = question.get("subCategory")
    if sub_category and sub_category not in SUB_CATEGORY_MAP[category]:
        return f"子分类 {sub_category} 不属于 {category}"
    options = question.get("options")
    if options is not None and (not isinstance(options, list) or len(options) != 4):
        return "选项必须为 4 个"
    answer = question.get("correctAnswer")
    if answer is not None and (not isinstance(answer, int) or answer < 0 or answer > 3):
        return "正确答案必须是 0..3"
    accuracy = question.get("accuracy")
    if accuracy is not None and (not isinstance(accuracy, (int, float)) or not 0 <= accuracy <= 100):
        return "正确率必须在 0..100 之间"
    return None


def practice_count(question: Dict) -> int:
    return int(question.get("mistakeCount") or 0) + int(question.get("correctCount") or 0)


def apply_session_detail(question: Dict, is_correct: bool, practiced_at: int) -> Dict:
    updated = dict(question)
    if is_correct:
        updated["correctCount"] = int(updated.get("correctCount") or 0) + 1
    else:
        updated["mistakeCount"] = int(updated.get("mistakeCount") or 0) + 1
    updated["lastPracticedAt"] = practiced_at
    return updated


def public_user(user: Dict) -> Dict:
    return {k: v for k, v in user.items() if k != "password"}


@dataclass
class UserContext:
    """The signed-in user for one client session.

    Created by login/registration and invalidated on logout. Storage
    operations given an invalidated context do nothing.
    """

    user: Dict
    active: bool = field(default=True)

    @property
    def user_id(self) -> str:
        return self.user["id"]

    def invalidate(self) -> None:
        self.active = False


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(stored: Optional[str], password: Optional[str]) -> bool:
    if not stored or password is None:
        return False
    return check_password_hash(stored, password)
