"""HTTP API for the mistake book: users, questions, sessions and the plugin endpoints."""

import json
import logging
import sqlite3
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from flask import Flask, jsonify, request
from flask_cors import CORS

from ai_service import analyze_external_question, chat_with_question
from errors import AIServiceError
from models import (
    apply_session_detail,
    externalize_images,
    hash_password,
    is_image_ref,
    new_id,
    now_ms,
    verify_password,
)
from settings import get_ark_api_key, load_settings


logger = logging.getLogger(__name__)

_settings = load_settings()
DB_PATH = _settings.server_db_path
IMAGE_THRESHOLD = _settings.image_threshold
ARK_MODEL = _settings.ark_model
NOTES_IMAGE_FIELD = "notesImage"

app = Flask(__name__)
CORS(app, allow_headers=["Content-Type", "X-User-Id", "X-External-Token"])


class Unauthorized(Exception):
    pass


class Forbidden(Exception):
    pass


def get_db_connection() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    conn = get_db_connection()
    try:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                username TEXT NOT NULL UNIQUE,
                password TEXT NOT NULL,
                nickname TEXT,
                avatar TEXT,
                external_token TEXT UNIQUE,
                created_at INTEGER NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS questions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                category TEXT,
                accuracy REAL,
                created_at INTEGER NOT NULL,
                json_data TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS question_images (
                question_id TEXT NOT NULL,
                field_key TEXT NOT NULL,
                image_data TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                PRIMARY KEY (question_id, field_key)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                score REAL,
                created_at INTEGER NOT NULL,
                json_data TEXT NOT NULL
            )
            """
        )
        conn.commit()
    finally:
        conn.close()


def row_to_user(row: sqlite3.Row) -> Dict:
    return {
        "id": row["id"],
        "username": row["username"],
        "nickname": row["nickname"] or "",
        "avatar": row["avatar"] or "",
        "externalToken": row["external_token"] or "",
    }


# --- users ---

def create_user(body: Dict) -> Dict:
    username = str(body.get("username") or "").strip()
    password = body.get("password") or ""
    if not username or not password:
        raise ValueError("用户名和密码不能为空")

    user_id = str(body.get("id") or new_id())
    token = new_id()
    conn = get_db_connection()
    try:
        conn.execute(
            """
            INSERT INTO users (id, username, password, nickname, avatar, external_token, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                username,
                hash_password(password),
                body.get("nickname") or username,
                body.get("avatar") or "",
                token,
                now_ms(),
            ),
        )
        conn.commit()
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return row_to_user(row)
    finally:
        conn.close()


def authenticate(username: str, password: str) -> Optional[Dict]:
    conn = get_db_connection()
    try:
        row = conn.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
    finally:
        conn.close()
    if row is None or not verify_password(row["password"], password):
        return None
    return row_to_user(row)


def find_user_by_token(token: str) -> Optional[Dict]:
    conn = get_db_connection()
    try:
        row = conn.execute("SELECT * FROM users WHERE external_token = ?", (token,)).fetchone()
        return row_to_user(row) if row is not None else None
    finally:
        conn.close()


def user_exists(user_id: str) -> bool:
    conn = get_db_connection()
    try:
        row = conn.execute("SELECT id FROM users WHERE id = ?", (user_id,)).fetchone()
        return row is not None
    finally:
        conn.close()


def update_user_profile(user_id: str, body: Dict) -> str:
    conn = get_db_connection()
    try:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            raise Unauthorized("Unauthorized")
        password = body.get("password")
        stored_password = hash_password(password) if password else row["password"]
        token = body.get("externalToken") or row["external_token"] or new_id()
        conn.execute(
            """
            UPDATE users SET nickname = ?, password = ?, avatar = ?, external_token = ?
            WHERE id = ?
            """,
            (
                body.get("nickname", row["nickname"]),
                stored_password,
                body.get("avatar", row["avatar"]),
                token,
                user_id,
            ),
        )
        conn.commit()
        return token
    finally:
        conn.close()


# --- questions ---

def list_questions(user_id: str) -> List[Dict]:
    conn = get_db_connection()
    try:
        rows = conn.execute(
            "SELECT json_data FROM questions WHERE user_id = ? ORDER BY created_at DESC",
            (user_id,),
        ).fetchall()
        return [json.loads(row["json_data"]) for row in rows]
    finally:
        conn.close()


def get_question(user_id: str, question_id: str) -> Optional[Dict]:
    conn = get_db_connection()
    try:
        row = conn.execute(
            "SELECT json_data FROM questions WHERE id = ? AND user_id = ?",
            (question_id, user_id),
        ).fetchone()
        return json.loads(row["json_data"]) if row is not None else None
    finally:
        conn.close()


def upsert_question(user_id: str, question: Dict) -> None:
    """Store a question, moving oversized images into question_images."""
    question_id = str(question.get("id") or "").strip()
    if not question_id:
        raise ValueError("question id is required.")

    light, images = externalize_images(
        question,
        IMAGE_THRESHOLD,
        "material_{}".format,
        NOTES_IMAGE_FIELD,
    )
    light["userId"] = user_id
    created_at = int(question.get("createdAt") or now_ms())
    light["createdAt"] = created_at

    conn = get_db_connection()
    try:
        owner = conn.execute("SELECT user_id FROM questions WHERE id = ?", (question_id,)).fetchone()
        if owner is not None and owner["user_id"] != user_id:
            raise Forbidden("Question belongs to another user")

        # Image rows survive only for slots that still point at them.
        kept_fields = {f"material_{i}" for i, m in enumerate(light["materials"]) if is_image_ref(m)}
        if is_image_ref(light.get("notesImage")):
            kept_fields.add(NOTES_IMAGE_FIELD)
        existing = conn.execute(
            "SELECT field_key FROM question_images WHERE question_id = ?",
            (question_id,),
        ).fetchall()
        stale = [row["field_key"] for row in existing if row["field_key"] not in kept_fields]
        conn.executemany(
            "DELETE FROM question_images WHERE question_id = ? AND field_key = ?",
            [(question_id, key) for key in stale],
        )
        conn.executemany(
            """
            INSERT INTO question_images (question_id, field_key, image_data, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(question_id, field_key) DO UPDATE SET
                image_data = excluded.image_data,
                created_at = excluded.created_at
            """,
            [(question_id, key, data, now_ms()) for key, data in images.items()],
        )
        conn.execute(
            """
            INSERT INTO questions (id, user_id, category, accuracy, created_at, json_data)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                category = excluded.category,
                accuracy = excluded.accuracy,
                json_data = excluded.json_data
            """,
            (
                question_id,
                user_id,
                question.get("category"),
                question.get("accuracy"),
                created_at,
                json.dumps(light, ensure_ascii=False),
            ),
        )
        conn.commit()
    finally:
        conn.close()


def get_question_images(user_id: str, question_id: str) -> Dict:
    conn = get_db_connection()
    try:
        rows = conn.execute(
            """
            SELECT qi.field_key, qi.image_data
            FROM question_images qi
            JOIN questions q ON q.id = qi.question_id
            WHERE qi.question_id = ? AND q.user_id = ?
            """,
            (question_id, user_id),
        ).fetchall()
    finally:
        conn.close()

    notes_image = ""
    materials_map: Dict[int, str] = {}
    for row in rows:
        if row["field_key"] == NOTES_IMAGE_FIELD:
            notes_image = row["image_data"]
        elif row["field_key"].startswith("material_"):
            materials_map[int(row["field_key"].split("_", 1)[1])] = row["image_data"]
    size = max(materials_map) + 1 if materials_map else 0
    return {
        "materials": [materials_map.get(i, "") for i in range(size)],
        "notesImage": notes_image,
    }


def delete_question(user_id: str, question_id: str, hard: bool) -> None:
    conn = get_db_connection()
    try:
        row = conn.execute(
            "SELECT json_data FROM questions WHERE id = ? AND user_id = ?",
            (question_id, user_id),
        ).fetchone()
        if row is None:
            return
        if hard:
            conn.execute("DELETE FROM questions WHERE id = ?", (question_id,))
            conn.execute("DELETE FROM question_images WHERE question_id = ?", (question_id,))
        else:
            question = json.loads(row["json_data"])
            question["deletedAt"] = now_ms()
            conn.execute(
                "UPDATE questions SET json_data = ? WHERE id = ?",
                (json.dumps(question, ensure_ascii=False), question_id),
            )
        conn.commit()
    finally:
        conn.close()


# --- sessions ---

def list_sessions(user_id: str) -> List[Dict]:
    conn = get_db_connection()
    try:
        rows = conn.execute(
            "SELECT json_data FROM sessions WHERE user_id = ? ORDER BY created_at DESC",
            (user_id,),
        ).fetchall()
        return [json.loads(row["json_data"]) for row in rows]
    finally:
        conn.close()


def save_session(user_id: str, session: Dict, skip_stats: bool = False) -> bool:
    """Upsert a session; returns True when question counters were updated."""
    session_id = str(session.get("id") or "").strip()
    if not session_id:
        raise ValueError("session id is required.")

    conn = get_db_connection()
    try:
        existing = conn.execute("SELECT user_id FROM sessions WHERE id = ?", (session_id,)).fetchone()
        if existing is not None and existing["user_id"] != user_id:
            raise Forbidden("Session belongs to another user")
        conn.execute(
            """
            INSERT INTO sessions (id, user_id, score, created_at, json_data)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                score = excluded.score,
                json_data = excluded.json_data
            """,
            (
                session_id,
                user_id,
                session.get("score"),
                int(session.get("date") or now_ms()),
                json.dumps(session, ensure_ascii=False),
            ),
        )

        counted = False
        if existing is None and not skip_stats:
            practiced_at = now_ms()
            for detail in session.get("details") or []:
                row = conn.execute(
                    "SELECT json_data FROM questions WHERE id = ? AND user_id = ?",
                    (detail.get("questionId"), user_id),
                ).fetchone()
                if row is None:
                    continue
                question = apply_session_detail(
                    json.loads(row["json_data"]), bool(detail.get("isCorrect")), practiced_at
                )
                conn.execute(
                    "UPDATE questions SET json_data = ? WHERE id = ?",
                    (json.dumps(question, ensure_ascii=False), question["id"]),
                )
            counted = True
        conn.commit()
        return counted
    finally:
        conn.close()


def delete_session(user_id: str, session_id: str) -> int:
    conn = get_db_connection()
    try:
        cur = conn.execute(
            "DELETE FROM sessions WHERE id = ? AND user_id = ?",
            (session_id, user_id),
        )
        conn.commit()
        return cur.rowcount
    finally:
        conn.close()


init_db()


# --- request helpers ---

def error_response(message: str, status: int = 400) -> Tuple[Dict, int]:
    return jsonify({"success": False, "message": message}), status


def handle_exception(exc: Exception) -> Tuple[Dict, int]:
    if isinstance(exc, Unauthorized):
        return error_response(str(exc) or "Unauthorized", 401)
    if isinstance(exc, Forbidden):
        return error_response(str(exc), 403)
    if isinstance(exc, ValueError):
        return error_response(str(exc), 400)
    if isinstance(exc, AIServiceError):
        return error_response(str(exc), 502)
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    return error_response(str(exc) or "Internal Server Error", 500)


def request_user_id() -> str:
    user_id = request.headers.get("X-User-Id", "").strip()
    if not user_id or not user_exists(user_id):
        raise Unauthorized("Unauthorized")
    return user_id


def external_user() -> Dict:
    token = request.headers.get("X-External-Token", "").strip()
    user = find_user_by_token(token) if token else None
    if user is None:
        raise Unauthorized("Invalid Token / Unauthorized")
    return user


def json_body() -> Dict:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValueError("JSON object body is required.")
    return body


@app.errorhandler(404)
def not_found(_exc) -> Tuple[Dict, int]:
    return error_response("Not Found", 404)


@app.errorhandler(405)
def method_not_allowed(_exc) -> Tuple[Dict, int]:
    return error_response("Method Not Allowed", 405)


@app.route("/api/health")
def health() -> Dict:
    return jsonify({"ok": True})


# --- auth ---

@app.route("/api/auth/register", methods=["POST"])
def register() -> Tuple[Dict, int]:
    try:
        user = create_user(json_body())
        logger.info("Registered user %s", user["id"])
        return jsonify({"success": True, "user": user}), 200
    except sqlite3.IntegrityError as exc:
        if "users.username" in str(exc):
            return error_response("用户名已存在")
        return error_response(f"注册失败: {exc}")
    except Exception as exc:
        return handle_exception(exc)


@app.route("/api/auth/login", methods=["POST"])
def login() -> Tuple[Dict, int]:
    try:
        body = json_body()
        user = authenticate(str(body.get("username", "")), str(body.get("password", "")))
        if user is None:
            return error_response("用户名或密码错误", 401)
        return jsonify({"success": True, "user": user}), 200
    except Exception as exc:
        return handle_exception(exc)


@app.route("/api/user", methods=["PUT"])
def update_user() -> Tuple[Dict, int]:
    try:
        token = update_user_profile(request_user_id(), json_body())
        return jsonify({"success": True, "externalToken": token}), 200
    except Exception as exc:
        return handle_exception(exc)


# --- questions ---

@app.route("/api/questions", methods=["GET"])
def questions() -> Tuple[Dict, int]:
    try:
        return jsonify(list_questions(request_user_id())), 200
    except Exception as exc:
        return handle_exception(exc)


@app.route("/api/questions", methods=["POST"])
def save_question_route() -> Tuple[Dict, int]:
    try:
        upsert_question(request_user_id(), json_body())
        return jsonify({"success": True}), 200
    except Exception as exc:
        return handle_exception(exc)


@app.route("/api/questions/<question_id>", methods=["GET"])
def question_detail(question_id: str) -> Tuple[Dict, int]:
    try:
        question = get_question(request_user_id(), question_id)
        if question is None:
            return error_response("Not Found", 404)
        return jsonify(question), 200
    except Exception as exc:
        return handle_exception(exc)


@app.route("/api/questions/<question_id>/images", methods=["GET"])
def question_images(question_id: str) -> Tuple[Dict, int]:
    try:
        return jsonify(get_question_images(request_user_id(), question_id)), 200
    except Exception as exc:
        return handle_exception(exc)


@app.route("/api/questions/<question_id>", methods=["DELETE"])
def delete_question_route(question_id: str) -> Tuple[Dict, int]:
    try:
        hard = request.args.get("hard", "false").lower() == "true"
        delete_question(request_user_id(), question_id, hard)
        return jsonify({"success": True}), 200
    except Exception as exc:
        return handle_exception(exc)


# --- sessions ---

@app.route("/api/sessions", methods=["GET"])
def sessions() -> Tuple[Dict, int]:
    try:
        return jsonify(list_sessions(request_user_id())), 200
    except Exception as exc:
        return handle_exception(exc)


@app.route("/api/sessions", methods=["POST"])
def save_session_route() -> Tuple[Dict, int]:
    try:
        skip_stats = request.args.get("skipStats", "false").lower() == "true"
        counted = save_session(request_user_id(), json_body(), skip_stats=skip_stats)
        return jsonify({"success": True, "statsUpdated": counted}), 200
    except Exception as exc:
        return handle_exception(exc)


@app.route("/api/sessions/<session_id>", methods=["DELETE"])
def delete_session_route(session_id: str) -> Tuple[Dict, int]:
    try:
        deleted = delete_session(request_user_id(), session_id)
        return jsonify({"success": True, "deleted": deleted}), 200
    except Exception as exc:
        return handle_exception(exc)


# --- browser extension ---

@app.route("/api/external/analyze", methods=["POST"])
def external_analyze() -> Tuple[Dict, int]:
    try:
        external_user()
        result = analyze_external_question(json_body(), get_ark_api_key(), model=ARK_MODEL)
        return jsonify({"success": True, **result}), 200
    except Exception as exc:
        return handle_exception(exc)


@app.route("/api/external/chat", methods=["POST"])
def external_chat() -> Tuple[Dict, int]:
    try:
        external_user()
        result = chat_with_question(json_body(), get_ark_api_key(), model=ARK_MODEL)
        return jsonify({"success": True, **result}), 200
    except Exception as exc:
        return handle_exception(exc)


@app.route("/api/external/save", methods=["POST"])
def external_save() -> Tuple[Dict, int]:
    try:
        user = external_user()
        question = json_body()
        question.setdefault("id", new_id())
        question.setdefault("createdAt", now_ms())
        question.setdefault("mistakeCount", 0)
        upsert_question(user["id"], question)
        return jsonify({"success": True, "id": question.get("id")}), 200
    except Exception as exc:
        return handle_exception(exc)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.run(host="localhost", port=8080, debug=True)
