"""
Initialize the Postgres database `learnlens` and create its tables.
- Uses DATABASE_URL when set, otherwise POSTGRES_HOST/PORT/USER/PASSWORD/DB
- Connects to maintenance DB `postgres` to create `learnlens` if missing
- Creates every table with IF NOT EXISTS; pass --reset to drop them first

Run:
  python learnlens-db/init_postgres.py [--reset]
"""
import os
import sys

import psycopg2
from dotenv import load_dotenv
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
PG_HOST = os.getenv("POSTGRES_HOST", "localhost")
PG_USER = os.getenv("POSTGRES_USER", "postgres")
PG_PASSWORD = os.getenv("POSTGRES_PASSWORD", "")
PG_DB_NAME = os.getenv("POSTGRES_DB", "learnlens")
PG_PORT = int(os.getenv("POSTGRES_PORT", "5432"))

TABLES = [
    # USERS
    """
    CREATE TABLE IF NOT EXISTS users (
        id SERIAL PRIMARY KEY,
        email TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        name TEXT,
        image TEXT,
        preferred_model TEXT NOT NULL DEFAULT 'gemini-2.5-flash-lite',
        max_tokens INTEGER NOT NULL DEFAULT 1000,
        max_context INTEGER NOT NULL DEFAULT 500000,
        custom_api_url TEXT,
        custom_api_key TEXT,
        custom_model TEXT,
        custom_max_tokens INTEGER,
        custom_max_context INTEGER,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    # MATERIALS
    """
    CREATE TABLE IF NOT EXISTS materials (
        id SERIAL PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        description TEXT,
        content TEXT,
        type TEXT NOT NULL,
        summary TEXT,
        glossary TEXT,
        flashcards TEXT,
        mind_map TEXT,
        is_public BOOLEAN NOT NULL DEFAULT FALSE,
        published_at TIMESTAMP,
        views INTEGER NOT NULL DEFAULT 0,
        forked_from_id INTEGER,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    # MESSAGES (per-material chat)
    """
    CREATE TABLE IF NOT EXISTS messages (
        id SERIAL PRIMARY KEY,
        material_id INTEGER NOT NULL REFERENCES materials(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    # QUIZZES
    """
    CREATE TABLE IF NOT EXISTS quizzes (
        id SERIAL PRIMARY KEY,
        material_id INTEGER NOT NULL REFERENCES materials(id) ON DELETE CASCADE,
        question TEXT NOT NULL,
        options TEXT[] DEFAULT '{}',
        answer INTEGER NOT NULL,
        explanation TEXT,
        hint TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    # STUDY SESSIONS
    """
    CREATE TABLE IF NOT EXISTS study_sessions (
        id SERIAL PRIMARY KEY,
        material_id INTEGER NOT NULL REFERENCES materials(id) ON DELETE CASCADE,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        start_time TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        end_time TIMESTAMP,
        duration INTEGER,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    # QUIZ ATTEMPTS
    """
    CREATE TABLE IF NOT EXISTS quiz_attempts (
        id SERIAL PRIMARY KEY,
        material_id INTEGER NOT NULL REFERENCES materials(id) ON DELETE CASCADE,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        score INTEGER NOT NULL,
        total_questions INTEGER NOT NULL,
        percentage DOUBLE PRECISION NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    # LEARNING EVALUATIONS
    """
    CREATE TABLE IF NOT EXISTS learning_evaluations (
        id SERIAL PRIMARY KEY,
        material_id INTEGER NOT NULL REFERENCES materials(id) ON DELETE CASCADE,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        content TEXT NOT NULL,
        score INTEGER NOT NULL,
        questions_count INTEGER NOT NULL,
        quiz_avg_score DOUBLE PRECISION,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    # CHAT SESSIONS (multi-material)
    """
    CREATE TABLE IF NOT EXISTS chat_sessions (
        id SERIAL PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_session_materials (
        id SERIAL PRIMARY KEY,
        chat_session_id INTEGER NOT NULL REFERENCES chat_sessions(id) ON DELETE CASCADE,
        material_id INTEGER NOT NULL REFERENCES materials(id) ON DELETE CASCADE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (chat_session_id, material_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_session_messages (
        id SERIAL PRIMARY KEY,
        chat_session_id INTEGER NOT NULL REFERENCES chat_sessions(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    # EXPLORE
    """
    CREATE TABLE IF NOT EXISTS explore_contents (
        id SERIAL PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        original_material_id INTEGER UNIQUE NOT NULL REFERENCES materials(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        description TEXT,
        content TEXT,
        type TEXT NOT NULL,
        views INTEGER NOT NULL DEFAULT 0,
        forks_count INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS explore_likes (
        id SERIAL PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        explore_content_id INTEGER NOT NULL REFERENCES explore_contents(id) ON DELETE CASCADE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (user_id, explore_content_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS explore_dislikes (
        id SERIAL PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        explore_content_id INTEGER NOT NULL REFERENCES explore_contents(id) ON DELETE CASCADE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (user_id, explore_content_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS explore_comments (
        id SERIAL PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        explore_content_id INTEGER NOT NULL REFERENCES explore_contents(id) ON DELETE CASCADE,
        parent_id INTEGER REFERENCES explore_comments(id) ON DELETE CASCADE,
        content TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    # STUDY PLANS
    """
    CREATE TABLE IF NOT EXISTS study_plans (
        id SERIAL PRIMARY KEY,
        material_id INTEGER NOT NULL REFERENCES materials(id) ON DELETE CASCADE,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        days INTEGER NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (material_id, user_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS study_tasks (
        id SERIAL PRIMARY KEY,
        study_plan_id INTEGER NOT NULL REFERENCES study_plans(id) ON DELETE CASCADE,
        day INTEGER NOT NULL,
        task TEXT NOT NULL,
        description TEXT,
        question TEXT,
        question_hint TEXT,
        is_completed BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
]


def connect(dbname: str):
    if DATABASE_URL:
        return psycopg2.connect(DATABASE_URL)
    return psycopg2.connect(
        host=PG_HOST,
        port=PG_PORT,
        user=PG_USER,
        password=PG_PASSWORD,
        database=dbname,
    )


def ensure_database_exists():
    if DATABASE_URL:
        # Hosted databases are provisioned outside this script
        return
    conn = connect("postgres")
    conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
    cur = conn.cursor()
    try:
        cur.execute("SELECT 1 FROM pg_database WHERE datname=%s", (PG_DB_NAME,))
        if cur.fetchone() is None:
            print(f"Creating database '{PG_DB_NAME}' ...")
            cur.execute(f"CREATE DATABASE {PG_DB_NAME};")
        else:
            print(f"Database '{PG_DB_NAME}' already exists.")
    finally:
        cur.close()
        conn.close()


def drop_all_tables():
    """Drop all tables in the public schema (CASCADE)."""
    conn = connect(PG_DB_NAME)
    cur = conn.cursor()
    try:
        cur.execute(
            """
            DO $$
            DECLARE r RECORD;
            BEGIN
              FOR r IN (
                SELECT tablename FROM pg_tables WHERE schemaname = 'public'
              ) LOOP
                EXECUTE 'DROP TABLE IF EXISTS ' || quote_ident(r.tablename) || ' CASCADE';
              END LOOP;
            END $$;
            """
        )
        conn.commit()
        print("Dropped all tables in 'public' schema.")
    except Exception as e:
        conn.rollback()
        print("Failed to drop tables:", e)
        sys.exit(1)
    finally:
        cur.close()
        conn.close()


def create_tables():
    conn = connect(PG_DB_NAME)
    cur = conn.cursor()
    try:
        for ddl in TABLES:
            cur.execute(ddl)
        conn.commit()
        print(f"Created {len(TABLES)} tables.")
    except Exception as e:
        conn.rollback()
        print("Failed to create tables:", e)
        sys.exit(1)
    finally:
        cur.close()
        conn.close()


if __name__ == "__main__":
    ensure_database_exists()
    if "--reset" in sys.argv[1:]:
        drop_all_tables()
    create_tables()
