# ============================================================================
# IMPORTS
# ============================================================================

# Standard Library
import json
import logging
import re
from datetime import datetime, timedelta, timezone
from functools import wraps

# Third-Party: Flask & Extensions
from flask import Flask, Response, g, jsonify, request, stream_with_context
from flask_cors import CORS
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename

# Third-Party: Auth
import jwt

# Third-Party: Database
import psycopg2

# Local
import ai_service
import extractors
import prompts
from config import AI_MODELS, config, is_known_model
from report import build_learning_report
from text_utils import as_bool, clamp_int, clip


# ============================================================================
# FLASK APP SETUP
# ============================================================================

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app, supports_credentials=True, origins=[config.FRONTEND_URL])
app.config["MAX_CONTENT_LENGTH"] = config.MAX_UPLOAD_SIZE

for _warning in config.validate():
    logger.warning(_warning)

EMAIL_RE = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"
CONTENT_SEPARATOR = "\n\n---\n\n[Additional Content]\n\n"
NOTES_SEPARATOR = "\n\n---\n\n[Additional Notes]\n\n"
MATERIAL_SEPARATOR = "\n\n---\n\n"


# ============================================================================
# DATABASE CONNECTION
# ============================================================================

def get_connection():
    try:
        return psycopg2.connect(config.DATABASE_URL)
    except psycopg2.Error as e:
        logger.error("Database connection failed: %s", e)
        return None


def iso(value):
    return value.isoformat() if value else None


def load_json_field(raw, default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Stored JSON field could not be decoded")
        return default


# ============================================================================
# ROW CONVERSION
# ============================================================================

USER_COLUMNS = (
    "id, email, name, image, preferred_model, max_tokens, max_context, "
    "custom_api_url, custom_api_key, custom_model, custom_max_tokens, custom_max_context, created_at"
)

MATERIAL_COLUMNS = (
    "id, user_id, title, description, content, type, summary, glossary, flashcards, mind_map, "
    "is_public, published_at, views, forked_from_id, created_at, updated_at"
)

QUIZ_COLUMNS = "id, material_id, question, options, answer, explanation, hint, created_at"

TASK_COLUMNS = "id, study_plan_id, day, task, description, question, question_hint, is_completed, created_at"


def user_to_json(row) -> dict:
    return {
        "id": row[0],
        "email": row[1],
        "name": row[2],
        "image": row[3],
        "preferredModel": row[4],
        "maxTokens": row[5],
        "maxContext": row[6],
        "customApiUrl": row[7],
        "customApiKey": row[8],
        "customModel": row[9],
        "customMaxTokens": row[10],
        "customMaxContext": row[11],
        "createdAt": iso(row[12]),
    }


def public_user(user: dict) -> dict:
    """User dict safe to return to the client: the custom API key never leaves the server."""
    out = {k: v for k, v in user.items() if k != "customApiKey"}
    out["hasCustomApiKey"] = bool(user.get("customApiKey"))
    return out


def material_to_json(row) -> dict:
    return {
        "id": row[0],
        "userId": row[1],
        "title": row[2],
        "description": row[3],
        "content": row[4],
        "type": row[5],
        "summary": row[6],
        "glossary": load_json_field(row[7], None),
        "flashcards": load_json_field(row[8], None),
        "mindMap": load_json_field(row[9], None),
        "isPublic": bool(row[10]),
        "publishedAt": iso(row[11]),
        "views": row[12],
        "forkedFromId": row[13],
        "createdAt": iso(row[14]),
        "updatedAt": iso(row[15]),
    }


def message_to_json(row) -> dict:
    return {"id": row[0], "role": row[1], "content": row[2], "createdAt": iso(row[3])}


def quiz_to_json(row) -> dict:
    return {
        "id": row[0],
        "materialId": row[1],
        "question": row[2],
        "options": list(row[3] or []),
        "answer": row[4],
        "explanation": row[5],
        "hint": row[6],
        "createdAt": iso(row[7]),
    }


def task_to_json(row) -> dict:
    return {
        "id": row[0],
        "studyPlanId": row[1],
        "day": row[2],
        "task": row[3],
        "description": row[4],
        "question": row[5],
        "questionHint": row[6],
        "isCompleted": bool(row[7]),
        "createdAt": iso(row[8]),
    }


def fetch_owned_material(cur, material_id: int, user_id: int) -> dict | None:
    cur.execute(
        f"SELECT {MATERIAL_COLUMNS} FROM materials WHERE id = %s AND user_id = %s",
        (material_id, user_id),
    )
    row = cur.fetchone()
    return material_to_json(row) if row else None


# ============================================================================
# AUTHENTICATION HELPERS
# ============================================================================

def generate_token(user_id: int) -> str:
    payload = {
        "user_id": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(days=config.JWT_EXPIRES_DAYS),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm="HS256")


def token_required(f):
    """Require a valid Bearer token and load the caller into g.user."""
    @wraps(f)
    def decorated(*args, **kwargs):
        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer ") or not auth_header[7:].strip():
            return jsonify({"error": "Unauthorized - No token provided"}), 401
        token = auth_header[7:].strip()
        try:
            payload = jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
            user_id = int(payload["user_id"])
        except (jwt.InvalidTokenError, KeyError, TypeError, ValueError):
            return jsonify({"error": "Unauthorized - Invalid token"}), 401

        conn = get_connection()
        if not conn:
            return jsonify({"error": "Database connection error"}), 500
        try:
            cur = conn.cursor()
            cur.execute(f"SELECT {USER_COLUMNS} FROM users WHERE id = %s", (user_id,))
            row = cur.fetchone()
            cur.close()
        finally:
            conn.close()
        if not row:
            return jsonify({"error": "Unauthorized - User not found"}), 401
        g.user = user_to_json(row)
        return f(*args, **kwargs)

    return decorated


# ============================================================================
# AI REQUEST HELPERS
# ============================================================================

def ai_kwargs(data: dict) -> dict:
    """Model, language and custom gateway for an AI call made on behalf of g.user."""
    return {
        "model": ai_service.model_for(g.user, data.get("model")),
        "language": prompts.normalize_language(data.get("language")),
        "custom": ai_service.custom_config_for(g.user),
    }


def material_source(material: dict) -> str:
    """Material text for generation, clipped to the caller's context limit."""
    content = (material.get("content") or "").strip()
    if not content:
        content = f"Topic: {material['title']}\nDescription: {material.get('description') or ''}"
    return clip(content, ai_service.context_limit_for(g.user))


def extract_upload(file):
    """Return (text, None) or (None, error response) for an uploaded file."""
    try:
        return extractors.extract_text(file.read(), file.mimetype, file.filename), None
    except extractors.UnsupportedFileType as e:
        return None, (jsonify({"error": str(e)}), 400)
    except Exception:
        logger.exception("Failed to parse upload %s", file.filename)
        return None, (jsonify({"error": "Failed to parse file"}), 400)


def request_data():
    """Form fields for multipart requests, JSON body otherwise."""
    if request.mimetype == "multipart/form-data":
        return request.form
    return request.get_json(silent=True) or {}


def sse(payload: dict) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


def sse_response(generate):
    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def save_message(table: str, fk_column: str, fk_id: int, role: str, content: str) -> dict | None:
    """Insert one chat message on its own connection (used after a stream finished)."""
    conn = get_connection()
    if not conn:
        return None
    try:
        cur = conn.cursor()
        cur.execute(
            f"INSERT INTO {table} ({fk_column}, role, content) VALUES (%s, %s, %s) "
            "RETURNING id, role, content, created_at",
            (fk_id, role, content),
        )
        row = cur.fetchone()
        if table == "chat_session_messages":
            cur.execute("UPDATE chat_sessions SET updated_at = NOW() WHERE id = %s", (fk_id,))
        conn.commit()
        cur.close()
        return message_to_json(row)
    except psycopg2.Error:
        conn.rollback()
        logger.exception("Failed to save %s message", role)
        return None
    finally:
        conn.close()


def stream_reply(user_message: dict, system_prompt: str, history: list[dict], table: str, fk_column: str, fk_id: int):
    """Stream the assistant reply as Server-Sent Events, then persist it."""
    options = {
        "model": ai_service.model_for(g.user),
        "max_tokens": ai_service.max_tokens_for(g.user),
        "custom": ai_service.custom_config_for(g.user),
        "language": prompts.normalize_language((request.get_json(silent=True) or {}).get("language")),
    }

    def generate():
        yield sse({"type": "user_message", "message": user_message})
        parts: list[str] = []
        try:
            for delta in ai_service.chat_with_material_stream(system_prompt, history, **options):
                parts.append(delta)
                yield sse({"type": "chunk", "content": delta})
        except ai_service.AIServiceError as e:
            logger.error("Streaming chat failed: %s", e)
            yield sse({"type": "error", "error": "Failed to generate response"})
            return
        reply = "".join(parts).strip() or ai_service.EMPTY_REPLY
        saved = save_message(table, fk_column, fk_id, "assistant", reply)
        if saved is None:
            yield sse({"type": "error", "error": "Failed to save response"})
            return
        yield sse({"type": "done", "message": saved})

    return sse_response(generate)


# ============================================================================
# ROUTES - HEALTH
# ============================================================================

@app.get("/health")
def health():
    return jsonify({"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()})


# ============================================================================
# ROUTES - AUTHENTICATION
# ============================================================================

@app.post("/api/auth/register")
def register():
    """Create an account and return a signed token."""
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip()
    password = data.get("password") or ""
    name = (data.get("name") or "").strip()

    if not email or not password:
        return jsonify({"error": "Email and password are required"}), 400
    if not re.match(EMAIL_RE, email):
        return jsonify({"error": "Invalid email format"}), 400
    if len(password) < 6:
        return jsonify({"error": "Password must be at least 6 characters"}), 400

    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        cur.execute("SELECT id FROM users WHERE email = %s", (email,))
        if cur.fetchone():
            return jsonify({"error": "Email already registered"}), 400
        cur.execute(
            f"INSERT INTO users (email, password_hash, name) VALUES (%s, %s, %s) RETURNING {USER_COLUMNS}",
            (email, generate_password_hash(password), name or email.split("@")[0]),
        )
        user = user_to_json(cur.fetchone())
        conn.commit()
        cur.close()
        logger.info("Registered user %s", user["id"])
        return jsonify({"success": True, "user": public_user(user), "token": generate_token(user["id"])}), 201
    except psycopg2.IntegrityError:
        conn.rollback()
        return jsonify({"error": "Email already registered"}), 400
    except Exception:
        conn.rollback()
        logger.exception("Registration failed")
        return jsonify({"error": "Failed to register user"}), 500
    finally:
        conn.close()


@app.post("/api/auth/login")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip()
    password = data.get("password") or ""
    if not email or not password:
        return jsonify({"error": "Email and password are required"}), 400

    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        cur.execute(f"SELECT {USER_COLUMNS}, password_hash FROM users WHERE email = %s", (email,))
        row = cur.fetchone()
        cur.close()
    finally:
        conn.close()

    if not row or not check_password_hash(row[-1], password):
        return jsonify({"error": "Invalid email or password"}), 401
    user = user_to_json(row[:-1])
    return jsonify({"success": True, "user": public_user(user), "token": generate_token(user["id"])})


@app.get("/api/auth/me")
@token_required
def me():
    return jsonify({"success": True, "user": public_user(g.user)})


# request key -> (column, kind); kind "int" fields must be positive integers
SETTINGS_FIELDS = {
    "name": ("name", "str"),
    "preferredModel": ("preferred_model", "str"),
    "maxTokens": ("max_tokens", "int"),
    "maxContext": ("max_context", "int"),
    "customApiUrl": ("custom_api_url", "custom_str"),
    "customApiKey": ("custom_api_key", "custom_str"),
    "customModel": ("custom_model", "custom_str"),
    "customMaxTokens": ("custom_max_tokens", "custom_int"),
    "customMaxContext": ("custom_max_context", "custom_int"),
}


@app.put("/api/auth/settings")
@token_required
def update_settings():
    """Update profile, model preference and custom gateway settings."""
    data = request.get_json(silent=True) or {}
    assignments: list[str] = []
    params: list = []

    for key, (column, kind) in SETTINGS_FIELDS.items():
        if key not in data:
            continue
        value = data.get(key)
        if isinstance(value, str):
            value = value.strip()
        empty = value is None or value == ""

        if key == "preferredModel" and not empty and not is_known_model(value):
            return jsonify({"error": "Invalid model selected"}), 400

        if empty:
            if kind.startswith("custom"):
                assignments.append(f"{column} = NULL")
            continue
        if kind.endswith("int"):
            try:
                value = int(value)
            except (TypeError, ValueError):
                return jsonify({"error": f"{key} must be a number"}), 400
            if value <= 0:
                return jsonify({"error": f"{key} must be positive"}), 400
        else:
            value = str(value)
        assignments.append(f"{column} = %s")
        params.append(value)

    if not assignments:
        return jsonify({"success": True, "user": public_user(g.user)})

    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        cur.execute(
            f"UPDATE users SET {', '.join(assignments)}, updated_at = NOW() WHERE id = %s RETURNING {USER_COLUMNS}",
            (*params, g.user["id"]),
        )
        user = user_to_json(cur.fetchone())
        conn.commit()
        cur.close()
        return jsonify({"success": True, "user": public_user(user)})
    except Exception:
        conn.rollback()
        logger.exception("Failed to update settings")
        return jsonify({"error": "Failed to update settings"}), 500
    finally:
        conn.close()


@app.get("/api/auth/models")
def list_models():
    return jsonify({"success": True, "models": AI_MODELS})


# ============================================================================
# ROUTES - MATERIALS
# ============================================================================

@app.get("/api/materials")
@token_required
def list_materials():
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT m.id, m.title, m.description, m.type, m.summary, m.is_public,
                   m.created_at, m.updated_at,
                   (SELECT COUNT(*) FROM messages WHERE material_id = m.id) AS message_count,
                   (SELECT COUNT(*) FROM quizzes WHERE material_id = m.id) AS quiz_count
            FROM materials m
            WHERE m.user_id = %s
            ORDER BY m.created_at DESC, m.id DESC
            """,
            (g.user["id"],),
        )
        materials = [
            {
                "id": r[0],
                "title": r[1],
                "description": r[2],
                "type": r[3],
                "summary": r[4],
                "isPublic": bool(r[5]),
                "createdAt": iso(r[6]),
                "updatedAt": iso(r[7]),
                "messageCount": r[8],
                "quizCount": r[9],
            }
            for r in cur.fetchall()
        ]
        cur.close()
        return jsonify({"success": True, "materials": materials})
    except Exception:
        logger.exception("Failed to list materials")
        return jsonify({"error": "Failed to fetch materials"}), 500
    finally:
        conn.close()


@app.get("/api/materials/<int:mid>")
@token_required
def get_material(mid: int):
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        material = fetch_owned_material(cur, mid, g.user["id"])
        if not material:
            return jsonify({"error": "Material not found"}), 404
        cur.execute(
            "SELECT id, role, content, created_at FROM messages WHERE material_id = %s ORDER BY created_at ASC, id ASC",
            (mid,),
        )
        material["messages"] = [message_to_json(r) for r in cur.fetchall()]
        cur.execute(f"SELECT {QUIZ_COLUMNS} FROM quizzes WHERE material_id = %s ORDER BY id ASC", (mid,))
        material["quizzes"] = [quiz_to_json(r) for r in cur.fetchall()]
        cur.close()
        return jsonify({"success": True, "material": material})
    except Exception:
        logger.exception("Failed to fetch material %s", mid)
        return jsonify({"error": "Failed to fetch material"}), 500
    finally:
        conn.close()


@app.post("/api/materials")
@token_required
def create_material():
    """Create a material from an uploaded file, raw text, or as an empty research topic."""
    data = request_data()
    title = (data.get("title") or "").strip() or "Untitled Material"
    description = (data.get("description") or "").strip() or None
    requested_type = (data.get("type") or "").strip() or None
    file = request.files.get("file")

    if requested_type == "research":
        content, material_type = None, "research"
    elif file:
        try:
            material_type = extractors.material_type_for(file.mimetype, file.filename, requested_type)
        except extractors.UnsupportedFileType as e:
            return jsonify({"error": str(e)}), 400
        content, error = extract_upload(file)
        if error:
            return error
    elif data.get("content"):
        content, material_type = data.get("content"), requested_type or "text"
    else:
        return jsonify({"error": "No file, content, or research mode provided"}), 400

    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        cur.execute(
            f"""
            INSERT INTO materials (user_id, title, description, content, type)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING {MATERIAL_COLUMNS}
            """,
            (g.user["id"], title, description, content, material_type),
        )
        material = material_to_json(cur.fetchone())
        conn.commit()
        cur.close()
        logger.info("Created %s material %s", material_type, material["id"])
        return jsonify({"success": True, "material": material}), 201
    except Exception:
        conn.rollback()
        logger.exception("Failed to create material")
        return jsonify({"error": "Failed to create material"}), 500
    finally:
        conn.close()


@app.put("/api/materials/<int:mid>")
@token_required
def update_material(mid: int):
    data = request.get_json(silent=True) or {}
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        material = fetch_owned_material(cur, mid, g.user["id"])
        if not material:
            return jsonify({"error": "Material not found"}), 404
        title = (data.get("title") or "").strip() or material["title"]
        content = data.get("content") or material["content"]
        description = data.get("description") or material["description"]
        cur.execute(
            f"""
            UPDATE materials SET title = %s, content = %s, description = %s, updated_at = NOW()
            WHERE id = %s RETURNING {MATERIAL_COLUMNS}
            """,
            (title, content, description, mid),
        )
        material = material_to_json(cur.fetchone())
        conn.commit()
        cur.close()
        return jsonify({"success": True, "material": material})
    except Exception:
        conn.rollback()
        logger.exception("Failed to update material %s", mid)
        return jsonify({"error": "Failed to update material"}), 500
    finally:
        conn.close()


@app.delete("/api/materials/<int:mid>")
@token_required
def delete_material(mid: int):
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        cur.execute("DELETE FROM materials WHERE id = %s AND user_id = %s RETURNING id", (mid, g.user["id"]))
        if not cur.fetchone():
            conn.rollback()
            return jsonify({"error": "Material not found"}), 404
        conn.commit()
        cur.close()
        return jsonify({"success": True, "message": "Material deleted"})
    except Exception:
        conn.rollback()
        logger.exception("Failed to delete material %s", mid)
        return jsonify({"error": "Failed to delete material"}), 500
    finally:
        conn.close()


@app.post("/api/materials/parse")
@token_required
def parse_material_file():
    """Extract text from a file without saving it, optionally with AI cleanup."""
    file = request.files.get("file")
    if not file:
        return jsonify({"error": "No file uploaded"}), 400
    content, error = extract_upload(file)
    if error:
        return error
    if str(request.form.get("smartCleanup", "")).lower() in ("1", "true", "yes"):
        content = ai_service.smart_cleanup(content)
    return jsonify({"success": True, "content": content})


@app.post("/api/materials/<int:mid>/summary")
@token_required
def generate_material_summary(mid: int):
    data = request.get_json(silent=True) or {}
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        material = fetch_owned_material(cur, mid, g.user["id"])
        if not material:
            return jsonify({"error": "Material not found"}), 404

        source = (material["content"] or "").strip()
        if material["type"] == "research" or not source:
            cur.execute(
                """
                SELECT role, content FROM messages WHERE material_id = %s
                ORDER BY created_at DESC, id DESC LIMIT 50
                """,
                (mid,),
            )
            history = list(reversed(cur.fetchall()))
            if history:
                source = "\n\n".join(
                    f"{'User' if role == 'user' else 'Assistant'}: {text}" for role, text in history
                )
            else:
                source = f"Topic: {material['title']}"
                if material["description"]:
                    source += f"\nDescription: {material['description']}"

        summary = ai_service.generate_summary(
            clip(source, ai_service.context_limit_for(g.user)),
            custom_text=data.get("customText"),
            **ai_kwargs(data),
        )
        cur.execute("UPDATE materials SET summary = %s, updated_at = NOW() WHERE id = %s", (summary, mid))
        conn.commit()
        cur.close()
        return jsonify({"success": True, "summary": summary})
    except Exception:
        conn.rollback()
        logger.exception("Failed to generate summary for material %s", mid)
        return jsonify({"error": "Failed to generate summary"}), 500
    finally:
        conn.close()


def _clear_material_children(mid: int, sql: str, message: str):
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        if not fetch_owned_material(cur, mid, g.user["id"]):
            return jsonify({"error": "Material not found"}), 404
        cur.execute(sql, (mid,))
        conn.commit()
        cur.close()
        return jsonify({"success": True, "message": message})
    except Exception:
        conn.rollback()
        logger.exception("Failed to clear data for material %s", mid)
        return jsonify({"error": "Failed to delete"}), 500
    finally:
        conn.close()


@app.delete("/api/materials/<int:mid>/summary")
@token_required
def delete_material_summary(mid: int):
    return _clear_material_children(
        mid, "UPDATE materials SET summary = NULL, updated_at = NOW() WHERE id = %s", "Summary deleted"
    )


@app.delete("/api/materials/<int:mid>/quizzes")
@token_required
def delete_material_quizzes(mid: int):
    return _clear_material_children(mid, "DELETE FROM quizzes WHERE material_id = %s", "Quizzes deleted")


@app.delete("/api/materials/<int:mid>/messages")
@token_required
def delete_material_messages(mid: int):
    return _clear_material_children(mid, "DELETE FROM messages WHERE material_id = %s", "Messages deleted")


@app.delete("/api/materials/<int:mid>/messages/<int:message_id>")
@token_required
def delete_material_message(mid: int, message_id: int):
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        if not fetch_owned_material(cur, mid, g.user["id"]):
            return jsonify({"error": "Material not found"}), 404
        cur.execute(
            "DELETE FROM messages WHERE id = %s AND material_id = %s RETURNING id",
            (message_id, mid),
        )
        if not cur.fetchone():
            conn.rollback()
            return jsonify({"error": "Message not found"}), 404
        conn.commit()
        cur.close()
        return jsonify({"success": True, "message": "Message deleted"})
    except Exception:
        conn.rollback()
        logger.exception("Failed to delete message %s", message_id)
        return jsonify({"error": "Failed to delete message"}), 500
    finally:
        conn.close()


def _append_content(mid: int, addition: str, separator: str):
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        material = fetch_owned_material(cur, mid, g.user["id"])
        if not material:
            return jsonify({"error": "Material not found"}), 404
        combined = (material["content"] or "") + separator + addition
        cur.execute(
            f"UPDATE materials SET content = %s, updated_at = NOW() WHERE id = %s RETURNING {MATERIAL_COLUMNS}",
            (combined, mid),
        )
        material = material_to_json(cur.fetchone())
        conn.commit()
        cur.close()
        return jsonify({"success": True, "material": material})
    except Exception:
        conn.rollback()
        logger.exception("Failed to append to material %s", mid)
        return jsonify({"error": "Failed to append content"}), 500
    finally:
        conn.close()


@app.post("/api/materials/<int:mid>/append-file")
@token_required
def append_file(mid: int):
    file = request.files.get("file")
    if not file:
        return jsonify({"error": "No file uploaded"}), 400
    content, error = extract_upload(file)
    if error:
        return error
    return _append_content(mid, content, CONTENT_SEPARATOR)


@app.post("/api/materials/<int:mid>/append-text")
@token_required
def append_text(mid: int):
    data = request.get_json(silent=True) or {}
    text = (data.get("text") or "").strip()
    if not text:
        return jsonify({"error": "No text provided"}), 400
    return _append_content(mid, text, NOTES_SEPARATOR)


@app.post("/api/materials/<int:mid>/publish")
@token_required
def publish_material(mid: int):
    """Moderate, then create or refresh the public explore snapshot of a material."""
    data = request.get_json(silent=True) or {}
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        material = fetch_owned_material(cur, mid, g.user["id"])
        if not material:
            return jsonify({"error": "Material not found"}), 404
        title = (data.get("title") or "").strip() or material["title"]
        description = data.get("description") or material["description"]
        content = data.get("content") or material["content"]

        verdict = ai_service.is_content_safe(
            f"Title: {title}\nDescription: {description or ''}\nContent: {content or ''}"
        )
        if not verdict["safe"]:
            logger.info("Publish of material %s rejected by moderation", mid)
            return jsonify({"error": "Content Moderation Failed", "reason": verdict.get("reason")}), 400

        cur.execute(
            """
            INSERT INTO explore_contents (user_id, original_material_id, title, description, content, type)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (original_material_id) DO UPDATE SET
                title = EXCLUDED.title,
                description = EXCLUDED.description,
                content = EXCLUDED.content,
                type = EXCLUDED.type,
                updated_at = NOW()
            RETURNING id
            """,
            (g.user["id"], mid, title, description, content, material["type"]),
        )
        explore_id = cur.fetchone()[0]
        cur.execute(
            f"""
            UPDATE materials SET is_public = TRUE, published_at = NOW(), updated_at = NOW()
            WHERE id = %s RETURNING {MATERIAL_COLUMNS}
            """,
            (mid,),
        )
        material = material_to_json(cur.fetchone())
        conn.commit()
        cur.close()
        return jsonify({"success": True, "material": material, "exploreId": explore_id})
    except Exception:
        conn.rollback()
        logger.exception("Failed to publish material %s", mid)
        return jsonify({"error": "Failed to publish material"}), 500
    finally:
        conn.close()


@app.post("/api/materials/<int:mid>/unpublish")
@token_required
def unpublish_material(mid: int):
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        cur.execute(
            f"""
            UPDATE materials SET is_public = FALSE, published_at = NULL, updated_at = NOW()
            WHERE id = %s AND user_id = %s RETURNING {MATERIAL_COLUMNS}
            """,
            (mid, g.user["id"]),
        )
        row = cur.fetchone()
        if not row:
            conn.rollback()
            return jsonify({"error": "Material not found"}), 404
        conn.commit()
        cur.close()
        return jsonify({"success": True, "material": material_to_json(row)})
    except Exception:
        conn.rollback()
        logger.exception("Failed to unpublish material %s", mid)
        return jsonify({"error": "Failed to unpublish material"}), 500
    finally:
        conn.close()


@app.get("/api/materials/<int:mid>/report")
@token_required
def material_report(mid: int):
    """Download a PDF learning report for a material."""
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        material = fetch_owned_material(cur, mid, g.user["id"])
        if not material:
            return jsonify({"error": "Material not found"}), 404
        cur.execute(
            "SELECT id, role, content, created_at FROM messages WHERE material_id = %s ORDER BY created_at ASC, id ASC",
            (mid,),
        )
        messages = [message_to_json(r) for r in cur.fetchall()]
        cur.execute(f"SELECT {QUIZ_COLUMNS} FROM quizzes WHERE material_id = %s ORDER BY id ASC", (mid,))
        quizzes = [quiz_to_json(r) for r in cur.fetchall()]
        cur.close()
    except Exception:
        logger.exception("Failed to load report data for material %s", mid)
        return jsonify({"error": "Failed to generate report"}), 500
    finally:
        conn.close()

    pdf_bytes = build_learning_report(
        material,
        messages,
        quizzes,
        material["glossary"] or [],
        material["flashcards"] or [],
    )
    filename = f"{secure_filename(material['title']) or 'material'}-report.pdf"
    return Response(
        pdf_bytes,
        mimetype="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ============================================================================
# ROUTES - AI TOOLS
# ============================================================================

@app.get("/api/ai/<int:mid>/concepts")
@token_required
def key_concepts(mid: int):
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        material = fetch_owned_material(cur, mid, g.user["id"])
        cur.close()
    finally:
        conn.close()
    if not material:
        return jsonify({"error": "Material not found"}), 404
    try:
        concepts = ai_service.generate_key_concepts(material_source(material), **ai_kwargs(request.args))
    except ai_service.AIServiceError as e:
        logger.error("Key concepts failed for material %s: %s", mid, e)
        return jsonify({"error": "Failed to generate key concepts"}), 500
    return jsonify({"success": True, "concepts": concepts})


@app.post("/api/ai/<int:mid>/quiz")
@token_required
def generate_quiz(mid: int):
    """Generate a quiz from one or more owned materials plus optional custom text."""
    data = request.get_json(silent=True) or {}
    material_ids = data.get("materialIds") or [mid]
    custom_text = (data.get("customText") or "").strip()
    try:
        material_ids = [int(x) for x in material_ids]
    except (TypeError, ValueError):
        return jsonify({"error": "materialIds must be a list of ids"}), 400

    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        if not fetch_owned_material(cur, mid, g.user["id"]):
            return jsonify({"error": "Material not found"}), 404
        cur.execute(
            "SELECT id, title, description, content FROM materials WHERE id = ANY(%s) AND user_id = %s ORDER BY id",
            (material_ids, g.user["id"]),
        )
        blocks = []
        for _, title, description, content in cur.fetchall():
            body = (content or "").strip() or (description or "").strip()
            if body:
                blocks.append(f"## {title}\n\n{body}")
        combined = MATERIAL_SEPARATOR.join(blocks)
        if custom_text:
            combined = (combined + "\n\n" if combined else "") + f"## Additional Content\n\n{custom_text}"
        if not combined:
            return jsonify({"error": "No materials found or custom text provided"}), 400

        questions = ai_service.generate_quiz(
            clip(combined, ai_service.context_limit_for(g.user)),
            count=data.get("count", 10),
            difficulty=data.get("difficulty") or "medium",
            **ai_kwargs(data),
        )
        if not questions:
            return jsonify({"error": "Failed to generate quiz questions"}), 500

        cur.execute("DELETE FROM quizzes WHERE material_id = %s", (mid,))
        saved = []
        for q in questions:
            cur.execute(
                f"""
                INSERT INTO quizzes (material_id, question, options, answer, explanation, hint)
                VALUES (%s, %s, %s, %s, %s, %s) RETURNING {QUIZ_COLUMNS}
                """,
                (mid, q["question"], q["options"], q["answer"], q.get("explanation"), q.get("hint")),
            )
            saved.append(quiz_to_json(cur.fetchone()))
        conn.commit()
        cur.close()
        return jsonify({"success": True, "quizzes": saved})
    except Exception:
        conn.rollback()
        logger.exception("Failed to generate quiz for material %s", mid)
        return jsonify({"error": "Failed to generate quiz"}), 500
    finally:
        conn.close()


@app.get("/api/ai/<int:mid>/quiz")
@token_required
def get_quiz(mid: int):
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        if not fetch_owned_material(cur, mid, g.user["id"]):
            return jsonify({"error": "Material not found"}), 404
        cur.execute(f"SELECT {QUIZ_COLUMNS} FROM quizzes WHERE material_id = %s ORDER BY id ASC", (mid,))
        quizzes = [quiz_to_json(r) for r in cur.fetchall()]
        cur.close()
        return jsonify({"success": True, "quizzes": quizzes})
    except Exception:
        logger.exception("Failed to fetch quizzes for material %s", mid)
        return jsonify({"error": "Failed to fetch quizzes"}), 500
    finally:
        conn.close()


@app.delete("/api/ai/<int:mid>/quiz")
@token_required
def delete_quiz(mid: int):
    return _clear_material_children(mid, "DELETE FROM quizzes WHERE material_id = %s", "Quizzes deleted")


# Materials store generated artifacts as JSON text: field -> (column, response key, label)
ARTIFACTS = {
    "glossary": ("glossary", "glossary", "glossary"),
    "flashcards": ("flashcards", "flashcards", "flashcards"),
    "mindmap": ("mind_map", "mindMap", "mind map"),
}


def _generate_artifact(mid: int, kind: str, generate):
    column, key, label = ARTIFACTS[kind]
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        material = fetch_owned_material(cur, mid, g.user["id"])
        if not material:
            return jsonify({"error": "Material not found"}), 404
        result = generate(material)
        if not result:
            return jsonify({"error": f"Failed to generate {label}"}), 500
        cur.execute(
            f"UPDATE materials SET {column} = %s, updated_at = NOW() WHERE id = %s",
            (json.dumps(result), mid),
        )
        conn.commit()
        cur.close()
        return jsonify({"success": True, key: result})
    except Exception:
        conn.rollback()
        logger.exception("Failed to generate %s for material %s", label, mid)
        return jsonify({"error": f"Failed to generate {label}"}), 500
    finally:
        conn.close()


def _get_artifact(mid: int, kind: str):
    column, key, label = ARTIFACTS[kind]
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        material = fetch_owned_material(cur, mid, g.user["id"])
        cur.close()
    finally:
        conn.close()
    if not material:
        return jsonify({"error": "Material not found"}), 404
    empty = None if kind == "mindmap" else []
    value = material[key] if material[key] is not None else empty
    return jsonify({"success": True, key: value})


def _delete_artifact(mid: int, kind: str):
    column, _, label = ARTIFACTS[kind]
    return _clear_material_children(
        mid,
        f"UPDATE materials SET {column} = NULL, updated_at = NOW() WHERE id = %s",
        f"{label.capitalize()} deleted",
    )


@app.post("/api/ai/<int:mid>/glossary")
@token_required
def generate_glossary(mid: int):
    data = request.get_json(silent=True) or {}
    return _generate_artifact(
        mid, "glossary",
        lambda m: ai_service.generate_glossary(material_source(m), **ai_kwargs(data)),
    )


@app.get("/api/ai/<int:mid>/glossary")
@token_required
def get_glossary(mid: int):
    return _get_artifact(mid, "glossary")


@app.delete("/api/ai/<int:mid>/glossary")
@token_required
def delete_glossary(mid: int):
    return _delete_artifact(mid, "glossary")


@app.post("/api/ai/<int:mid>/flashcards")
@token_required
def generate_flashcards(mid: int):
    data = request.get_json(silent=True) or {}
    return _generate_artifact(
        mid, "flashcards",
        lambda m: ai_service.generate_flashcards(material_source(m), count=data.get("count"), **ai_kwargs(data)),
    )


@app.get("/api/ai/<int:mid>/flashcards")
@token_required
def get_flashcards(mid: int):
    return _get_artifact(mid, "flashcards")


@app.delete("/api/ai/<int:mid>/flashcards")
@token_required
def delete_flashcards(mid: int):
    return _delete_artifact(mid, "flashcards")


@app.post("/api/ai/<int:mid>/mindmap")
@token_required
def generate_mind_map(mid: int):
    data = request.get_json(silent=True) or {}
    return _generate_artifact(
        mid, "mindmap",
        lambda m: ai_service.generate_mind_map(m["title"], material_source(m), **ai_kwargs(data)),
    )


@app.get("/api/ai/<int:mid>/mindmap")
@token_required
def get_mind_map(mid: int):
    return _get_artifact(mid, "mindmap")


@app.delete("/api/ai/<int:mid>/mindmap")
@token_required
def delete_mind_map(mid: int):
    return _delete_artifact(mid, "mindmap")


# ============================================================================
# ROUTES - STUDY PLANS
# ============================================================================

def _plan_with_tasks(cur, plan_row) -> dict:
    plan = {
        "id": plan_row[0],
        "materialId": plan_row[1],
        "days": plan_row[2],
        "createdAt": iso(plan_row[3]),
        "updatedAt": iso(plan_row[4]),
    }
    cur.execute(
        f"SELECT {TASK_COLUMNS} FROM study_tasks WHERE study_plan_id = %s ORDER BY day ASC, id ASC",
        (plan["id"],),
    )
    plan["tasks"] = [task_to_json(r) for r in cur.fetchall()]
    return plan


@app.post("/api/ai/<int:mid>/study-plan")
@token_required
def generate_study_plan(mid: int):
    """Replace the caller's study plan for a material with a freshly generated one."""
    data = request.get_json(silent=True) or {}
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        material = fetch_owned_material(cur, mid, g.user["id"])
        if not material:
            return jsonify({"error": "Material not found"}), 404
        days = clamp_int(data.get("days"), 7, 1, 30)
        tasks = ai_service.generate_study_plan(material_source(material), days=days, **ai_kwargs(data))
        if not tasks:
            return jsonify({"error": "Failed to generate study plan"}), 500

        cur.execute("DELETE FROM study_plans WHERE material_id = %s AND user_id = %s", (mid, g.user["id"]))
        cur.execute(
            """
            INSERT INTO study_plans (material_id, user_id, days) VALUES (%s, %s, %s)
            RETURNING id, material_id, days, created_at, updated_at
            """,
            (mid, g.user["id"], days),
        )
        plan_row = cur.fetchone()
        for t in tasks:
            cur.execute(
                """
                INSERT INTO study_tasks (study_plan_id, day, task, description, question, question_hint)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (plan_row[0], t["day"], t["task"], t["description"], t["question"], t["questionHint"]),
            )
        plan = _plan_with_tasks(cur, plan_row)
        conn.commit()
        cur.close()
        return jsonify({"success": True, "plan": plan})
    except Exception:
        conn.rollback()
        logger.exception("Failed to generate study plan for material %s", mid)
        return jsonify({"error": "Failed to generate study plan"}), 500
    finally:
        conn.close()


@app.get("/api/ai/<int:mid>/study-plan")
@token_required
def get_study_plan(mid: int):
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        if not fetch_owned_material(cur, mid, g.user["id"]):
            return jsonify({"error": "Material not found"}), 404
        cur.execute(
            """
            SELECT id, material_id, days, created_at, updated_at FROM study_plans
            WHERE material_id = %s AND user_id = %s
            """,
            (mid, g.user["id"]),
        )
        row = cur.fetchone()
        plan = _plan_with_tasks(cur, row) if row else None
        cur.close()
        return jsonify({"success": True, "plan": plan})
    except Exception:
        logger.exception("Failed to fetch study plan for material %s", mid)
        return jsonify({"error": "Failed to fetch study plan"}), 500
    finally:
        conn.close()


@app.delete("/api/ai/<int:mid>/study-plan")
@token_required
def delete_study_plan(mid: int):
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        if not fetch_owned_material(cur, mid, g.user["id"]):
            return jsonify({"error": "Material not found"}), 404
        cur.execute("DELETE FROM study_plans WHERE material_id = %s AND user_id = %s", (mid, g.user["id"]))
        conn.commit()
        cur.close()
        return jsonify({"success": True, "message": "Study plan deleted"})
    except Exception:
        conn.rollback()
        logger.exception("Failed to delete study plan for material %s", mid)
        return jsonify({"error": "Failed to delete study plan"}), 500
    finally:
        conn.close()


OWNED_TASK_SQL = f"""
    SELECT {', '.join('t.' + c for c in TASK_COLUMNS.split(', '))}, m.content, m.title, m.description
    FROM study_tasks t
    JOIN study_plans p ON p.id = t.study_plan_id
    JOIN materials m ON m.id = p.material_id
    WHERE t.id = %s AND p.user_id = %s
"""


@app.patch("/api/ai/study-tasks/<int:task_id>")
@token_required
def update_study_task(task_id: int):
    data = request.get_json(silent=True) or {}
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        cur.execute(OWNED_TASK_SQL, (task_id, g.user["id"]))
        row = cur.fetchone()
        if not row:
            return jsonify({"error": "Task not found"}), 404
        task = task_to_json(row[:9])
        completed = as_bool(data["isCompleted"]) if "isCompleted" in data else not task["isCompleted"]
        cur.execute(
            f"UPDATE study_tasks SET is_completed = %s WHERE id = %s RETURNING {TASK_COLUMNS}",
            (completed, task_id),
        )
        task = task_to_json(cur.fetchone())
        conn.commit()
        cur.close()
        return jsonify({"success": True, "task": task})
    except Exception:
        conn.rollback()
        logger.exception("Failed to update study task %s", task_id)
        return jsonify({"error": "Failed to update task"}), 500
    finally:
        conn.close()


@app.post("/api/ai/study-tasks/<int:task_id>/verify")
@token_required
def verify_study_task(task_id: int):
    """Judge the learner's answer to a task question; a correct answer completes the task."""
    data = request.get_json(silent=True) or {}
    answer = (data.get("answer") or "").strip()
    if not answer:
        return jsonify({"error": "Answer is required"}), 400

    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        cur.execute(OWNED_TASK_SQL, (task_id, g.user["id"]))
        row = cur.fetchone()
        if not row:
            return jsonify({"error": "Task not found"}), 404
        task = task_to_json(row[:9])
        source = material_source({"content": row[9], "title": row[10], "description": row[11]})
        result = ai_service.verify_task_answer(
            task["task"],
            task["question"] or task["task"],
            answer,
            source,
            **ai_kwargs(data),
        )
        if result["correct"]:
            cur.execute(
                f"UPDATE study_tasks SET is_completed = TRUE WHERE id = %s RETURNING {TASK_COLUMNS}",
                (task_id,),
            )
            task = task_to_json(cur.fetchone())
            conn.commit()
        cur.close()
        return jsonify({"success": True, "correct": result["correct"], "feedback": result["feedback"], "task": task})
    except ai_service.AIServiceError as e:
        conn.rollback()
        logger.error("Answer verification failed for task %s: %s", task_id, e)
        return jsonify({"error": "Failed to verify answer"}), 500
    except Exception:
        conn.rollback()
        logger.exception("Failed to verify study task %s", task_id)
        return jsonify({"error": "Failed to verify answer"}), 500
    finally:
        conn.close()


# ============================================================================
# ROUTES - CHAT (per material)
# ============================================================================

def _recent_history(cur, table: str, fk_column: str, fk_id: int, limit: int = 10) -> list[dict]:
    cur.execute(
        f"""
        SELECT role, content FROM (
            SELECT id, role, content, created_at FROM {table}
            WHERE {fk_column} = %s ORDER BY created_at DESC, id DESC LIMIT {int(limit)}
        ) recent ORDER BY created_at ASC, id ASC
        """,
        (fk_id,),
    )
    return [{"role": role, "content": content} for role, content in cur.fetchall()]


@app.get("/api/chat/<int:mid>")
@token_required
def get_chat(mid: int):
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        if not fetch_owned_material(cur, mid, g.user["id"]):
            return jsonify({"error": "Material not found"}), 404
        cur.execute(
            "SELECT id, role, content, created_at FROM messages WHERE material_id = %s ORDER BY created_at ASC, id ASC",
            (mid,),
        )
        messages = [message_to_json(r) for r in cur.fetchall()]
        cur.close()
        return jsonify({"success": True, "messages": messages})
    except Exception:
        logger.exception("Failed to fetch chat for material %s", mid)
        return jsonify({"error": "Failed to fetch chat history"}), 500
    finally:
        conn.close()


def _start_material_chat(mid: int, message: str):
    """Save the user message; return (material, user message, history) or an error response."""
    conn = get_connection()
    if not conn:
        return None, (jsonify({"error": "Database connection error"}), 500)
    try:
        cur = conn.cursor()
        material = fetch_owned_material(cur, mid, g.user["id"])
        if not material:
            return None, (jsonify({"error": "Material not found"}), 404)
        history = _recent_history(cur, "messages", "material_id", mid)
        cur.execute(
            "INSERT INTO messages (material_id, role, content) VALUES (%s, 'user', %s) "
            "RETURNING id, role, content, created_at",
            (mid, message),
        )
        user_message = message_to_json(cur.fetchone())
        conn.commit()
        cur.close()
        history.append({"role": "user", "content": message})
        return (material, user_message, history), None
    except Exception:
        conn.rollback()
        logger.exception("Failed to save chat message for material %s", mid)
        return None, (jsonify({"error": "Failed to process message"}), 500)
    finally:
        conn.close()


@app.post("/api/chat/<int:mid>")
@token_required
def send_chat_message(mid: int):
    data = request.get_json(silent=True) or {}
    message = data.get("message")
    if not message or not isinstance(message, str):
        return jsonify({"error": "Message is required"}), 400

    started, error = _start_material_chat(mid, message)
    if error:
        return error
    material, user_message, history = started

    reply = ai_service.chat_with_material(
        ai_service.system_prompt_for_material(material, ai_service.context_limit_for(g.user)),
        history,
        model=ai_service.model_for(g.user),
        max_tokens=ai_service.max_tokens_for(g.user),
        custom=ai_service.custom_config_for(g.user),
        language=prompts.normalize_language(data.get("language")),
    )
    assistant_message = save_message("messages", "material_id", mid, "assistant", reply)
    if assistant_message is None:
        return jsonify({"error": "Failed to process message"}), 500
    return jsonify({"success": True, "userMessage": user_message, "assistantMessage": assistant_message})


@app.post("/api/chat/<int:mid>/stream")
@token_required
def stream_chat_message(mid: int):
    data = request.get_json(silent=True) or {}
    message = data.get("message")
    if not message or not isinstance(message, str):
        return jsonify({"error": "Message is required"}), 400

    started, error = _start_material_chat(mid, message)
    if error:
        return error
    material, user_message, history = started
    system_prompt = ai_service.system_prompt_for_material(material, ai_service.context_limit_for(g.user))
    return stream_reply(user_message, system_prompt, history, "messages", "material_id", mid)


@app.delete("/api/chat/<int:mid>")
@token_required
def clear_chat(mid: int):
    return _clear_material_children(mid, "DELETE FROM messages WHERE material_id = %s", "Chat history cleared")


# ============================================================================
# ROUTES - CHAT SESSIONS (multi-material)
# ============================================================================

def _session_materials(cur, session_id: int, with_content: bool = False) -> list[dict]:
    columns = "m.id, m.title, m.type, m.description" + (", m.content" if with_content else "")
    cur.execute(
        f"""
        SELECT {columns}
        FROM chat_session_materials csm
        JOIN materials m ON m.id = csm.material_id
        WHERE csm.chat_session_id = %s
        ORDER BY csm.id ASC
        """,
        (session_id,),
    )
    out = []
    for r in cur.fetchall():
        item = {"id": r[0], "title": r[1], "type": r[2], "description": r[3]}
        if with_content:
            item["content"] = r[4]
        out.append(item)
    return out


def default_session_title(titles: list[str]) -> str:
    title = " + ".join(titles[:3])
    if len(titles) > 3:
        title += f" +{len(titles) - 3} more"
    return title


@app.get("/api/chat-sessions")
@token_required
def list_chat_sessions():
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT s.id, s.title, s.created_at, s.updated_at,
                   (SELECT COUNT(*) FROM chat_session_messages WHERE chat_session_id = s.id)
            FROM chat_sessions s
            WHERE s.user_id = %s
            ORDER BY s.updated_at DESC, s.id DESC
            """,
            (g.user["id"],),
        )
        rows = cur.fetchall()
        sessions = []
        for r in rows:
            sessions.append({
                "id": r[0],
                "title": r[1],
                "createdAt": iso(r[2]),
                "updatedAt": iso(r[3]),
                "messageCount": r[4],
                "materials": _session_materials(cur, r[0]),
            })
        cur.close()
        return jsonify({"success": True, "chatSessions": sessions})
    except Exception:
        logger.exception("Failed to list chat sessions")
        return jsonify({"error": "Failed to fetch chat sessions"}), 500
    finally:
        conn.close()


def _owned_session(cur, session_id: int):
    cur.execute(
        "SELECT id, title, created_at, updated_at FROM chat_sessions WHERE id = %s AND user_id = %s",
        (session_id, g.user["id"]),
    )
    return cur.fetchone()


@app.get("/api/chat-sessions/<int:sid>")
@token_required
def get_chat_session(sid: int):
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        row = _owned_session(cur, sid)
        if not row:
            return jsonify({"error": "Chat session not found"}), 404
        materials = _session_materials(cur, sid)
        cur.execute(
            """
            SELECT id, role, content, created_at FROM chat_session_messages
            WHERE chat_session_id = %s ORDER BY created_at ASC, id ASC
            """,
            (sid,),
        )
        messages = [message_to_json(r) for r in cur.fetchall()]
        cur.close()
        return jsonify({
            "success": True,
            "chatSession": {
                "id": row[0],
                "title": row[1],
                "createdAt": iso(row[2]),
                "updatedAt": iso(row[3]),
                "materials": materials,
                "messages": messages,
            },
        })
    except Exception:
        logger.exception("Failed to fetch chat session %s", sid)
        return jsonify({"error": "Failed to fetch chat session"}), 500
    finally:
        conn.close()


@app.post("/api/chat-sessions")
@token_required
def create_chat_session():
    data = request.get_json(silent=True) or {}
    material_ids = data.get("materialIds")
    if not isinstance(material_ids, list) or not material_ids:
        return jsonify({"error": "At least one material ID is required"}), 400
    try:
        material_ids = list(dict.fromkeys(int(x) for x in material_ids))
    except (TypeError, ValueError):
        return jsonify({"error": "materialIds must be a list of ids"}), 400

    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        cur.execute(
            "SELECT id, title FROM materials WHERE id = ANY(%s) AND user_id = %s",
            (material_ids, g.user["id"]),
        )
        found = {r[0]: r[1] for r in cur.fetchall()}
        if len(found) != len(material_ids):
            return jsonify({"error": "One or more materials not found"}), 404

        title = (data.get("title") or "").strip() or default_session_title([found[i] for i in material_ids])
        cur.execute(
            "INSERT INTO chat_sessions (user_id, title) VALUES (%s, %s) RETURNING id, created_at, updated_at",
            (g.user["id"], title),
        )
        sid, created_at, updated_at = cur.fetchone()
        for material_id in material_ids:
            cur.execute(
                "INSERT INTO chat_session_materials (chat_session_id, material_id) VALUES (%s, %s)",
                (sid, material_id),
            )
        materials = _session_materials(cur, sid)
        conn.commit()
        cur.close()
        return jsonify({
            "success": True,
            "chatSession": {
                "id": sid,
                "title": title,
                "createdAt": iso(created_at),
                "updatedAt": iso(updated_at),
                "materials": materials,
                "messages": [],
            },
        }), 201
    except Exception:
        conn.rollback()
        logger.exception("Failed to create chat session")
        return jsonify({"error": "Failed to create chat session"}), 500
    finally:
        conn.close()


@app.post("/api/chat-sessions/<int:sid>/stream")
@token_required
def stream_chat_session(sid: int):
    data = request.get_json(silent=True) or {}
    message = data.get("message")
    if not message or not isinstance(message, str):
        return jsonify({"error": "Message is required"}), 400

    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        if not _owned_session(cur, sid):
            return jsonify({"error": "Chat session not found"}), 404
        materials = _session_materials(cur, sid, with_content=True)
        history = _recent_history(cur, "chat_session_messages", "chat_session_id", sid)
        cur.execute(
            "INSERT INTO chat_session_messages (chat_session_id, role, content) VALUES (%s, 'user', %s) "
            "RETURNING id, role, content, created_at",
            (sid, message),
        )
        user_message = message_to_json(cur.fetchone())
        cur.execute("UPDATE chat_sessions SET updated_at = NOW() WHERE id = %s", (sid,))
        conn.commit()
        cur.close()
    except Exception:
        conn.rollback()
        logger.exception("Failed to save message for chat session %s", sid)
        return jsonify({"error": "Failed to process message"}), 500
    finally:
        conn.close()

    combined = MATERIAL_SEPARATOR.join(
        f"=== {m['title']} ===\n{m['content'] or m['description'] or ''}" for m in materials
    )
    system_prompt = prompts.chat_system_prompt(clip(combined, ai_service.context_limit_for(g.user)))
    history.append({"role": "user", "content": message})
    return stream_reply(user_message, system_prompt, history, "chat_session_messages", "chat_session_id", sid)


@app.delete("/api/chat-sessions/<int:sid>")
@token_required
def delete_chat_session(sid: int):
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        cur.execute("DELETE FROM chat_sessions WHERE id = %s AND user_id = %s RETURNING id", (sid, g.user["id"]))
        if not cur.fetchone():
            conn.rollback()
            return jsonify({"error": "Chat session not found"}), 404
        conn.commit()
        cur.close()
        return jsonify({"success": True, "message": "Chat session deleted"})
    except Exception:
        conn.rollback()
        logger.exception("Failed to delete chat session %s", sid)
        return jsonify({"error": "Failed to delete chat session"}), 500
    finally:
        conn.close()


@app.delete("/api/chat-sessions/<int:sid>/messages")
@token_required
def clear_chat_session(sid: int):
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        if not _owned_session(cur, sid):
            return jsonify({"error": "Chat session not found"}), 404
        cur.execute("DELETE FROM chat_session_messages WHERE chat_session_id = %s", (sid,))
        conn.commit()
        cur.close()
        return jsonify({"success": True, "message": "Chat history cleared"})
    except Exception:
        conn.rollback()
        logger.exception("Failed to clear chat session %s", sid)
        return jsonify({"error": "Failed to clear chat history"}), 500
    finally:
        conn.close()


# ============================================================================
# ROUTES - EXPLORE
# ============================================================================

EXPLORE_SELECT = """
    SELECT e.id, e.title, e.description, e.type, e.views, e.forks_count,
           e.created_at, e.updated_at, e.original_material_id,
           u.id, u.name, u.image,
           (SELECT COUNT(*) FROM explore_likes l WHERE l.explore_content_id = e.id) AS like_count,
           (SELECT COUNT(*) FROM explore_dislikes d WHERE d.explore_content_id = e.id) AS dislike_count,
           (SELECT COUNT(*) FROM explore_comments c WHERE c.explore_content_id = e.id) AS comment_count,
           EXISTS (SELECT 1 FROM explore_likes l WHERE l.explore_content_id = e.id AND l.user_id = %s),
           EXISTS (SELECT 1 FROM explore_dislikes d WHERE d.explore_content_id = e.id AND d.user_id = %s)
"""


def explore_to_json(row) -> dict:
    return {
        "id": row[0],
        "title": row[1],
        "description": row[2],
        "type": row[3],
        "views": row[4],
        "forkCount": row[5] or 0,
        "createdAt": iso(row[6]),
        "updatedAt": iso(row[7]),
        "originalMaterialId": row[8],
        "user": {"id": row[9], "name": row[10], "image": row[11]},
        "likeCount": row[12],
        "dislikeCount": row[13],
        "commentCount": row[14],
        "isLiked": bool(row[15]),
        "isDisliked": bool(row[16]),
    }


@app.get("/api/explore")
@token_required
def list_explore():
    """Public snapshots, newest first or by like count, optionally filtered."""
    query = (request.args.get("query") or "").strip()
    sort = request.args.get("sort")
    author_id = request.args.get("userId", type=int)

    where: list[str] = []
    params: list = [g.user["id"], g.user["id"]]
    if author_id is not None:
        where.append("e.user_id = %s")
        params.append(author_id)
    if query:
        where.append("(e.title ILIKE %s OR e.description ILIKE %s)")
        params.extend([f"%{query}%", f"%{query}%"])
    where_sql = ("WHERE " + " AND ".join(where)) if where else ""
    order_sql = "like_count DESC, e.created_at DESC" if sort == "popular" else "e.created_at DESC, e.id DESC"

    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        cur.execute(
            f"{EXPLORE_SELECT} FROM explore_contents e JOIN users u ON u.id = e.user_id "
            f"{where_sql} ORDER BY {order_sql} LIMIT 50",
            tuple(params),
        )
        materials = [explore_to_json(r) for r in cur.fetchall()]
        cur.close()
        return jsonify({"success": True, "materials": materials})
    except Exception:
        logger.exception("Failed to list explore content")
        return jsonify({"error": "Failed to fetch explore content."}), 500
    finally:
        conn.close()


@app.get("/api/explore/<int:cid>")
@token_required
def get_explore_content(cid: int):
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        cur.execute(
            f"{EXPLORE_SELECT}, e.content FROM explore_contents e JOIN users u ON u.id = e.user_id WHERE e.id = %s",
            (g.user["id"], g.user["id"], cid),
        )
        row = cur.fetchone()
        if not row:
            return jsonify({"error": "Content not found"}), 404
        content = explore_to_json(row)
        content["content"] = row[17]
        try:
            cur.execute("UPDATE explore_contents SET views = views + 1 WHERE id = %s", (cid,))
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            logger.warning("Failed to increment views for %s: %s", cid, e)
        cur.close()
        return jsonify({"success": True, "material": content})
    except Exception:
        logger.exception("Failed to fetch explore content %s", cid)
        return jsonify({"error": "Failed to fetch content details"}), 500
    finally:
        conn.close()


def _toggle_reaction(cid: int, table: str, opposite: str, key: str, label: str):
    """Toggle a like or dislike; setting one always clears the other."""
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        cur.execute("SELECT id FROM explore_contents WHERE id = %s", (cid,))
        if not cur.fetchone():
            return jsonify({"error": "Content not found"}), 404
        uid = g.user["id"]
        cur.execute(f"DELETE FROM {opposite} WHERE user_id = %s AND explore_content_id = %s", (uid, cid))
        cur.execute(
            f"DELETE FROM {table} WHERE user_id = %s AND explore_content_id = %s RETURNING id",
            (uid, cid),
        )
        if cur.fetchone():
            active = False
        else:
            cur.execute(f"INSERT INTO {table} (user_id, explore_content_id) VALUES (%s, %s)", (uid, cid))
            active = True
        conn.commit()
        cur.close()
        return jsonify({"success": True, key: active})
    except Exception:
        conn.rollback()
        logger.exception("Failed to toggle %s on %s", label, cid)
        return jsonify({"error": f"Failed to toggle {label}"}), 500
    finally:
        conn.close()


@app.post("/api/explore/<int:cid>/like")
@token_required
def toggle_like(cid: int):
    return _toggle_reaction(cid, "explore_likes", "explore_dislikes", "liked", "like")


@app.post("/api/explore/<int:cid>/dislike")
@token_required
def toggle_dislike(cid: int):
    return _toggle_reaction(cid, "explore_dislikes", "explore_likes", "disliked", "dislike")


def comment_to_json(row) -> dict:
    return {
        "id": row[0],
        "content": row[1],
        "parentId": row[2],
        "createdAt": iso(row[3]),
        "updatedAt": iso(row[4]),
        "user": {"id": row[5], "name": row[6], "image": row[7]},
    }


COMMENT_SELECT = """
    SELECT c.id, c.content, c.parent_id, c.created_at, c.updated_at, u.id, u.name, u.image
    FROM explore_comments c JOIN users u ON u.id = c.user_id
"""


def build_comment_tree(comments: list[dict]) -> list[dict]:
    """Top-level comments newest first, each with its replies oldest first."""
    by_id = {c["id"]: dict(c, replies=[]) for c in comments}
    roots = []
    for c in comments:
        node = by_id[c["id"]]
        parent = by_id.get(c["parentId"])
        if parent is not None:
            parent["replies"].append(node)
        else:
            roots.append(node)
    roots.reverse()
    return roots


@app.get("/api/explore/<int:cid>/comments")
@token_required
def list_comments(cid: int):
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        cur.execute(
            f"{COMMENT_SELECT} WHERE c.explore_content_id = %s ORDER BY c.created_at ASC, c.id ASC",
            (cid,),
        )
        comments = build_comment_tree([comment_to_json(r) for r in cur.fetchall()])
        cur.close()
        return jsonify({"success": True, "comments": comments})
    except Exception:
        logger.exception("Failed to fetch comments for %s", cid)
        return jsonify({"error": "Failed to fetch comments"}), 500
    finally:
        conn.close()


@app.post("/api/explore/<int:cid>/comments")
@token_required
def add_comment(cid: int):
    data = request.get_json(silent=True) or {}
    content = (data.get("content") or "").strip()
    parent_id = data.get("parentId")
    if not content:
        return jsonify({"error": "Comment cannot be empty"}), 400
    if not parent_id:
        parent_id = None
    else:
        try:
            parent_id = int(parent_id)
        except (TypeError, ValueError):
            return jsonify({"error": "Invalid parent comment"}), 400

    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        cur.execute("SELECT id FROM explore_contents WHERE id = %s", (cid,))
        if not cur.fetchone():
            return jsonify({"error": "Content not found"}), 404
        if parent_id is not None:
            cur.execute("SELECT explore_content_id FROM explore_comments WHERE id = %s", (parent_id,))
            parent = cur.fetchone()
            if not parent or parent[0] != cid:
                return jsonify({"error": "Parent comment not found"}), 404
        cur.execute(
            """
            INSERT INTO explore_comments (user_id, explore_content_id, parent_id, content)
            VALUES (%s, %s, %s, %s) RETURNING id, content, parent_id, created_at, updated_at
            """,
            (g.user["id"], cid, parent_id, content),
        )
        row = cur.fetchone()
        conn.commit()
        cur.close()
        user = g.user
        comment = comment_to_json((*row, user["id"], user["name"], user["image"]))
        comment["replies"] = []
        return jsonify({"success": True, "comment": comment}), 201
    except Exception:
        conn.rollback()
        logger.exception("Failed to add comment to %s", cid)
        return jsonify({"error": "Failed to add comment"}), 500
    finally:
        conn.close()


@app.delete("/api/explore/comments/<int:comment_id>")
@token_required
def delete_comment(comment_id: int):
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        cur.execute("SELECT user_id FROM explore_comments WHERE id = %s", (comment_id,))
        row = cur.fetchone()
        if not row:
            return jsonify({"error": "Comment not found"}), 404
        if row[0] != g.user["id"]:
            return jsonify({"error": "Not authorized"}), 403
        cur.execute("DELETE FROM explore_comments WHERE id = %s", (comment_id,))
        conn.commit()
        cur.close()
        return jsonify({"success": True, "message": "Comment deleted"})
    except Exception:
        conn.rollback()
        logger.exception("Failed to delete comment %s", comment_id)
        return jsonify({"error": "Failed to delete comment"}), 500
    finally:
        conn.close()


@app.post("/api/explore/<int:cid>/fork")
@token_required
def fork_content(cid: int):
    """Copy a public snapshot into the caller's private materials."""
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        cur.execute(
            "SELECT title, description, content, type, original_material_id FROM explore_contents WHERE id = %s",
            (cid,),
        )
        row = cur.fetchone()
        if not row:
            return jsonify({"error": "Content not found"}), 404
        title, description, content, material_type, original_id = row
        cur.execute(
            f"""
            INSERT INTO materials (user_id, title, description, content, type, forked_from_id)
            VALUES (%s, %s, %s, %s, %s, %s) RETURNING {MATERIAL_COLUMNS}
            """,
            (g.user["id"], f"{title} (Fork)", description, content, material_type, original_id),
        )
        material = material_to_json(cur.fetchone())
        cur.execute("UPDATE explore_contents SET forks_count = forks_count + 1 WHERE id = %s", (cid,))
        conn.commit()
        cur.close()
        return jsonify({"success": True, "material": material})
    except Exception:
        conn.rollback()
        logger.exception("Failed to fork explore content %s", cid)
        return jsonify({"error": "Failed to fork content"}), 500
    finally:
        conn.close()


# ============================================================================
# ROUTES - ANALYTICS
# ============================================================================

SESSION_COLUMNS = "id, material_id, start_time, end_time, duration"


def study_session_to_json(row) -> dict:
    return {
        "id": row[0],
        "materialId": row[1],
        "startTime": iso(row[2]),
        "endTime": iso(row[3]),
        "duration": row[4],
    }


def attempt_to_json(row) -> dict:
    return {
        "id": row[0],
        "score": row[1],
        "totalQuestions": row[2],
        "percentage": row[3],
        "createdAt": iso(row[4]),
    }


def evaluation_to_json(row) -> dict:
    return {
        "id": row[0],
        "content": row[1],
        "score": row[2],
        "questionsCount": row[3],
        "quizAvgScore": row[4],
        "createdAt": iso(row[5]),
    }


def _owns_material(cur, material_id) -> bool:
    cur.execute("SELECT id FROM materials WHERE id = %s AND user_id = %s", (material_id, g.user["id"]))
    return cur.fetchone() is not None


@app.post("/api/analytics/session/start")
@token_required
def start_study_session():
    data = request.get_json(silent=True) or {}
    material_id = data.get("materialId")
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        if material_id is None or not _owns_material(cur, material_id):
            return jsonify({"error": "Material not found"}), 404
        cur.execute(
            f"INSERT INTO study_sessions (material_id, user_id) VALUES (%s, %s) RETURNING {SESSION_COLUMNS}",
            (material_id, g.user["id"]),
        )
        session_row = cur.fetchone()
        conn.commit()
        cur.close()
        return jsonify({"success": True, "session": study_session_to_json(session_row)})
    except Exception:
        conn.rollback()
        logger.exception("Failed to start study session")
        return jsonify({"error": "Failed to start session"}), 500
    finally:
        conn.close()


@app.post("/api/analytics/session/end")
@token_required
def end_study_session():
    data = request.get_json(silent=True) or {}
    session_id = data.get("sessionId")
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        cur.execute(
            f"""
            UPDATE study_sessions
            SET end_time = NOW(),
                duration = FLOOR(EXTRACT(EPOCH FROM (NOW() - start_time)))::INTEGER
            WHERE id = %s AND user_id = %s
            RETURNING {SESSION_COLUMNS}
            """,
            (session_id, g.user["id"]),
        )
        row = cur.fetchone()
        if not row:
            conn.rollback()
            return jsonify({"error": "Session not found"}), 404
        conn.commit()
        cur.close()
        return jsonify({"success": True, "session": study_session_to_json(row)})
    except Exception:
        conn.rollback()
        logger.exception("Failed to end study session %s", session_id)
        return jsonify({"error": "Failed to end session"}), 500
    finally:
        conn.close()


@app.post("/api/analytics/quiz-attempt")
@token_required
def save_quiz_attempt():
    data = request.get_json(silent=True) or {}
    material_id = data.get("materialId")
    try:
        score = int(data.get("score"))
        total = int(data.get("totalQuestions"))
    except (TypeError, ValueError):
        return jsonify({"error": "score and totalQuestions must be numbers"}), 400
    percentage = (score / total) * 100 if total > 0 else 0

    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        if material_id is None or not _owns_material(cur, material_id):
            return jsonify({"error": "Material not found"}), 404
        cur.execute(
            """
            INSERT INTO quiz_attempts (material_id, user_id, score, total_questions, percentage)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id, score, total_questions, percentage, created_at
            """,
            (material_id, g.user["id"], score, total, percentage),
        )
        attempt = attempt_to_json(cur.fetchone())
        conn.commit()
        cur.close()
        return jsonify({"success": True, "attempt": attempt})
    except Exception:
        conn.rollback()
        logger.exception("Failed to save quiz attempt")
        return jsonify({"error": "Failed to save quiz attempt"}), 500
    finally:
        conn.close()


@app.get("/api/analytics/material/<int:mid>")
@token_required
def material_analytics(mid: int):
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        if not _owns_material(cur, mid):
            return jsonify({"error": "Material not found"}), 404
        cur.execute(
            """
            SELECT id, role, content, created_at FROM messages WHERE material_id = %s
            ORDER BY created_at DESC, id DESC LIMIT 20
            """,
            (mid,),
        )
        messages = [message_to_json(r) for r in cur.fetchall()]
        cur.execute(
            """
            SELECT id, score, total_questions, percentage, created_at FROM quiz_attempts
            WHERE material_id = %s AND user_id = %s ORDER BY created_at DESC, id DESC LIMIT 10
            """,
            (mid, g.user["id"]),
        )
        attempts = [attempt_to_json(r) for r in cur.fetchall()]
        cur.execute(
            """
            SELECT COALESCE(SUM(duration), 0) FROM study_sessions
            WHERE material_id = %s AND user_id = %s AND duration IS NOT NULL
            """,
            (mid, g.user["id"]),
        )
        total_study_time = int(cur.fetchone()[0] or 0)
        cur.close()
    except Exception:
        logger.exception("Failed to load analytics for material %s", mid)
        return jsonify({"error": "Failed to get analytics"}), 500
    finally:
        conn.close()

    percentages = [a["percentage"] for a in attempts]
    average = sum(percentages) / len(percentages) if percentages else 0
    best = max(percentages) if percentages else 0
    return jsonify({
        "success": True,
        "analytics": {
            "chatActivity": {
                "totalQuestions": sum(1 for m in messages if m["role"] == "user"),
                "lastActivity": messages[0]["createdAt"] if messages else None,
                "recentMessages": messages[:5],
            },
            "quizPerformance": {
                "totalAttempts": len(attempts),
                "averageScore": round(average, 1),
                "bestScore": round(best, 1),
                "recentAttempts": attempts,
            },
            "totalStudyTime": total_study_time,
        },
    })


@app.post("/api/analytics/evaluate/<int:mid>")
@token_required
def evaluate_learning(mid: int):
    """Ask the AI tutor to evaluate the learner's progress from chat and quiz history."""
    data = request.get_json(silent=True) or {}
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        material = fetch_owned_material(cur, mid, g.user["id"])
        if not material:
            return jsonify({"error": "Material not found"}), 404
        cur.execute(
            "SELECT role, content FROM messages WHERE material_id = %s ORDER BY created_at ASC, id ASC",
            (mid,),
        )
        messages = [{"role": role, "content": content} for role, content in cur.fetchall()]
        questions_count = sum(1 for m in messages if m["role"] == "user")
        if questions_count < 1:
            return jsonify({"error": "Not enough conversations to evaluate. Ask some questions first!"}), 400

        cur.execute(
            """
            SELECT id, score, total_questions, percentage, created_at FROM quiz_attempts
            WHERE material_id = %s AND user_id = %s ORDER BY created_at DESC, id DESC LIMIT 5
            """,
            (mid, g.user["id"]),
        )
        attempts = [attempt_to_json(r) for r in cur.fetchall()]
        cur.execute(
            """
            SELECT id, content, score, questions_count, quiz_avg_score, created_at FROM learning_evaluations
            WHERE material_id = %s AND user_id = %s ORDER BY created_at DESC, id DESC LIMIT 1
            """,
            (mid, g.user["id"]),
        )
        previous_row = cur.fetchone()
        previous = evaluation_to_json(previous_row) if previous_row else None
        quiz_avg = sum(a["percentage"] for a in attempts) / len(attempts) if attempts else None

        content, score = ai_service.evaluate_learning(
            material["title"],
            messages,
            attempts,
            previous,
            language=prompts.normalize_language(data.get("language")),
        )
        cur.execute(
            """
            INSERT INTO learning_evaluations (material_id, user_id, content, score, questions_count, quiz_avg_score)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING id, content, score, questions_count, quiz_avg_score, created_at
            """,
            (mid, g.user["id"], content, score, questions_count, quiz_avg),
        )
        evaluation = evaluation_to_json(cur.fetchone())
        conn.commit()
        cur.close()
        return jsonify({"success": True, "evaluation": evaluation})
    except ai_service.AIServiceError as e:
        conn.rollback()
        logger.error("Learning evaluation failed for material %s: %s", mid, e)
        return jsonify({"error": "Failed to evaluate learning"}), 500
    except Exception:
        conn.rollback()
        logger.exception("Failed to evaluate learning for material %s", mid)
        return jsonify({"error": "Failed to evaluate learning"}), 500
    finally:
        conn.close()


@app.get("/api/analytics/evaluations/<int:mid>")
@token_required
def list_evaluations(mid: int):
    conn = get_connection()
    if not conn:
        return jsonify({"error": "Database connection error"}), 500
    try:
        cur = conn.cursor()
        if not _owns_material(cur, mid):
            return jsonify({"error": "Material not found"}), 404
        cur.execute(
            """
            SELECT id, content, score, questions_count, quiz_avg_score, created_at FROM learning_evaluations
            WHERE material_id = %s AND user_id = %s ORDER BY created_at DESC, id DESC LIMIT 10
            """,
            (mid, g.user["id"]),
        )
        evaluations = [evaluation_to_json(r) for r in cur.fetchall()]
        cur.close()
        return jsonify({"success": True, "evaluations": evaluations})
    except Exception:
        logger.exception("Failed to fetch evaluations for material %s", mid)
        return jsonify({"error": "Failed to get evaluations"}), 500
    finally:
        conn.close()


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(413)
def too_large(e):
    limit_mb = config.MAX_UPLOAD_SIZE // (1024 * 1024)
    return jsonify({"error": f"File too large. Maximum size is {limit_mb}MB"}), 413


@app.errorhandler(500)
def server_error(e):
    original = getattr(e, "original_exception", None)
    logger.error("Unhandled error: %s", original or e)
    return jsonify({"error": str(original or "Internal server error")}), 500


# ============================================================================
# RUN SERVER
# ============================================================================

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=config.PORT, debug=config.LOG_LEVEL == "DEBUG")
