"""
Pytest configuration and fixtures
"""
import os
import sys
import hmac
import hashlib
from pathlib import Path

import pytest

# Must be set before the app module is imported: it builds its app at import time.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("APP_SECRET", "test-secret")

project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import app as app_module  # noqa: E402
from models import db  # noqa: E402

CSRF_KEY = "test-csrf-key"

SAMPLE_QUESTIONS = [
    {
        "title": "Add two numbers",
        "description": "Return a + b.",
        "language": "python",
        "starter_code": "def add(a, b):\n    pass\n",
        "test_cases": [
            {"input": "add(1, 2)", "expected_output": "3"},
            {"input": "add(-1, 1)", "expected_output": "0"},
            {"input": "add(0, 0)", "expected_output": "0"},
        ],
    },
    {
        "title": "Greeting",
        "description": "Return 'hi ' + name.",
        "language": "javascript",
        "starter_code": "function greet(name) {}\n",
        "test_cases": [
            {"input": "greet('a')", "expected_output": "hi a"},
        ],
    },
]


@pytest.fixture
def app():
    flask_app = app_module.app
    flask_app.config.update(TESTING=True)
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def csrf(client):
    """Pin the session CSRF key and return the matching token."""
    with client.session_transaction() as sess:
        sess["csrf_key"] = CSRF_KEY
    return hmac.new(app_module.APP_SECRET.encode(), CSRF_KEY.encode(), hashlib.sha256).hexdigest()


@pytest.fixture
def sample_exam_id(app):
    questions = app_module.normalize_exam_questions(SAMPLE_QUESTIONS)
    exam = app_module.create_exam("Intro Exam", "Warm-up questions", questions)
    return exam.id
