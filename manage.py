import argparse, json
from sqlalchemy.exc import SQLAlchemyError
from app import create_app, create_exam, normalize_exam_questions
from models import db, Exam

DEMO_EXAM = {
    "title": "Python Warm-up",
    "description": "Two short functions to get started.",
    "questions": [
        {
            "title": "Sum of a list",
            "description": "Write total(nums) returning the sum of the numbers in nums.",
            "language": "python",
            "starter_code": "def total(nums):\n    pass\n",
            "test_cases": [
                {"input": "total([1, 2, 3])", "expected_output": "6"},
                {"input": "total([])", "expected_output": "0"},
            ],
        },
        {
            "title": "Reverse a string",
            "description": "Write reverse(s) returning s backwards.",
            "language": "python",
            "starter_code": "def reverse(s):\n    pass\n",
            "test_cases": [
                {"input": "reverse('abc')", "expected_output": "cba"},
            ],
        },
    ],
}

def _load_exam(item):
    questions = normalize_exam_questions(item.get("questions") or [])
    return create_exam(item.get("title"), item.get("description"), questions)

def seed_exams(app, json_path):
    """
    JSON: [{"title": "...", "description": "...", "questions": [
             {"title": "...", "description": "...", "language": "python|javascript",
              "starter_code": "...", "test_cases": [{"input": "...", "expected_output": "..."}]}]}]
    A single object is accepted too. Invalid exams are skipped and reported.
    """
    with app.app_context():
        with open(json_path, "r", encoding="utf-8") as fh:
            items = json.load(fh)
        if isinstance(items, dict):
            items = [items]
        out = []
        for idx, it in enumerate(items, start=1):
            if not isinstance(it, dict):
                out.append({"row": idx, "error": "not an object"})
                continue
            try:
                exam = _load_exam(it)
            except ValueError as exc:
                out.append({"row": idx, "error": str(exc)})
                continue
            except SQLAlchemyError as exc:
                db.session.rollback()
                out.append({"row": idx, "error": f"database error: {exc}"})
                continue
            out.append({"row": idx, "id": exam.id, "title": exam.title, "questions": len(exam.questions)})
        created = [r for r in out if "id" in r]
        print("Seeded:", len(created))
        for r in out:
            if "id" in r:
                print(f"{r['id']}: {r['title']} ({r['questions']} questions)")
            else:
                print(f"row {r['row']}: skipped ({r['error']})")
        return created

def seed_demo(app):
    with app.app_context():
        exam = Exam.query.filter_by(title=DEMO_EXAM["title"]).first()
        if exam is None:
            exam = _load_exam(DEMO_EXAM)
            print(f"[seed] created demo exam: {exam.id}")
        else:
            print(f"[seed] demo exam already exists: {exam.id}")
        return exam.id

def list_exams(app):
    with app.app_context():
        exams = Exam.query.order_by(Exam.created_at.desc(), Exam.id.desc()).all()
        for ex in exams:
            print(f"{ex.id}\t{ex.title}\t{len(ex.questions)} question(s)\t{len(ex.submissions)} submission(s)")
        return len(exams)

if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("cmd", choices=["seed-exams", "seed-demo", "list-exams"])
    parser.add_argument("json_path", nargs="?")
    args = parser.parse_args()

    app = create_app()
    if args.cmd == "seed-exams":
        if not args.json_path:
            parser.error("seed-exams needs a json_path")
        seed_exams(app, args.json_path)
    elif args.cmd == "seed-demo":
        seed_demo(app)
    else:
        list_exams(app)
