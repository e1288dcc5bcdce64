from datetime import datetime
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import UniqueConstraint


db = SQLAlchemy()

LANGUAGES = ("python", "javascript")
SUBMISSION_STATUSES = ("submitted", "passed", "failed")


class Exam(db.Model):
    __tablename__ = "exams"
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    created_at = db.Column(db.DateTime, default=datetime.now, nullable=False)

    questions = db.relationship("Question", back_populates="exam", cascade="all,delete-orphan", order_by="Question.order")
    submissions = db.relationship("Submission", back_populates="exam", cascade="all,delete-orphan")


class Question(db.Model):
    __tablename__ = "questions"
    id = db.Column(db.Integer, primary_key=True)
    exam_id = db.Column(db.Integer, db.ForeignKey("exams.id", ondelete="CASCADE"), index=True, nullable=False)
    order = db.Column(db.Integer, nullable=False)  # zero-based position within the exam

    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    language = db.Column(db.String(20), default="python", nullable=False)  # python | javascript
    starter_code = db.Column(db.Text, nullable=False, default="")

    exam = db.relationship("Exam", back_populates="questions")
    test_cases = db.relationship("TestCase", back_populates="question", cascade="all,delete-orphan", order_by="TestCase.order")
    submissions = db.relationship("Submission", back_populates="question", cascade="all,delete-orphan")

    __table_args__ = (
        UniqueConstraint("exam_id", "order", name="uq_question_exam_order"),
    )


class TestCase(db.Model):
    __tablename__ = "test_cases"
    __test__ = False  # not a pytest class

    id = db.Column(db.Integer, primary_key=True)
    question_id = db.Column(db.Integer, db.ForeignKey("questions.id", ondelete="CASCADE"), index=True, nullable=False)
    order = db.Column(db.Integer, nullable=False)
    input = db.Column(db.Text, nullable=False, default="")
    expected_output = db.Column(db.Text, nullable=False, default="")

    question = db.relationship("Question", back_populates="test_cases")

    __table_args__ = (
        UniqueConstraint("question_id", "order", name="uq_test_case_question_order"),
    )


class Submission(db.Model):
    __tablename__ = "submissions"
    id = db.Column(db.Integer, primary_key=True)
    exam_id = db.Column(db.Integer, db.ForeignKey("exams.id", ondelete="CASCADE"), index=True, nullable=False)
    question_id = db.Column(db.Integer, db.ForeignKey("questions.id", ondelete="CASCADE"), index=True, nullable=False)
    # Opaque per-session token for one pass through the exam
    attempt_id = db.Column(db.String(64), index=True, nullable=False)

    code = db.Column(db.Text, nullable=False, default="")
    status = db.Column(db.String(20), default="submitted", nullable=False)  # submitted | passed | failed

    created_at = db.Column(db.DateTime, default=datetime.now, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now, nullable=False)

    exam = db.relationship("Exam", back_populates="submissions")
    question = db.relationship("Question", back_populates="submissions")
    grade = db.relationship("Grade", back_populates="submission", uselist=False, cascade="all,delete-orphan")

    __table_args__ = (
        UniqueConstraint("question_id", "attempt_id", name="uq_submission_question_attempt"),
    )


class Grade(db.Model):
    __tablename__ = "grades"
    id = db.Column(db.Integer, primary_key=True)
    submission_id = db.Column(db.Integer, db.ForeignKey("submissions.id", ondelete="CASCADE"), unique=True, index=True, nullable=False)
    score = db.Column(db.Integer, nullable=False, default=0)  # 0..100
    feedback = db.Column(db.Text, nullable=False, default="")
    created_at = db.Column(db.DateTime, default=datetime.now, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now, nullable=False)

    submission = db.relationship("Submission", back_populates="grade")
