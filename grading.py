"""Test-taking helpers: answer grading, question navigation, test windows and
the student score calculator."""
from datetime import datetime, timedelta, timezone
from uuid import uuid4

QUESTION_TYPES = ("MCQ", "SHORT_ANSWER", "CODING")


def normalize_mcq_selection(value):
    """Convert various answer formats (index, letter, text) into an index if possible."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        s = value.strip()
        if s.isdigit():
            return int(s)
        if len(s) == 1 and s.isalpha():
            return ord(s.upper()) - ord('A')
    return None


def _marks(question):
    try:
        return float(question.get("marks", 1) or 0)
    except (TypeError, ValueError):
        return 0.0


def grade_answer(question, answer):
    """Return True/False for MCQ and short answers. Coding answers are graded
    by running them, so this returns None for them."""
    qtype = question.get("type")
    if answer is None or (isinstance(answer, str) and not answer.strip()):
        return False if qtype != "CODING" else None

    if qtype == "MCQ":
        options = question.get("options") or []
        correct_index = normalize_mcq_selection(question.get("correct_option"))
        selected_index = normalize_mcq_selection(answer)
        if isinstance(correct_index, int) and isinstance(selected_index, int):
            return selected_index == correct_index
        correct_text = question.get("correct_answer")
        if correct_text is None and isinstance(correct_index, int) and 0 <= correct_index < len(options):
            correct_text = options[correct_index]
        if correct_text and isinstance(answer, str):
            return answer.strip().lower() == str(correct_text).strip().lower()
        return False

    if qtype == "SHORT_ANSWER":
        accepted = question.get("accepted_answers") or []
        if question.get("correct_answer"):
            accepted = list(accepted) + [question["correct_answer"]]
        given = str(answer).strip().lower()
        return any(given == str(a).strip().lower() for a in accepted)

    return None


def grade_submission(questions, answers, coding_results=None):
    """Score a finished attempt.

    ``answers`` maps question id to the student's answer, ``coding_results``
    maps coding question id to an execution result dict with ``tests_passed``
    and ``total_tests``. Coding questions earn marks in proportion to the
    tests they pass.
    """
    coding_results = coding_results or {}
    results = []
    score = 0.0
    total = 0.0

    for q in questions:
        qid = str(q.get("id", ""))
        marks = _marks(q)
        total += marks
        answer = answers.get(qid)
        earned = 0.0
        entry = {
            "question_id": qid,
            "type": q.get("type"),
            "question_text": q.get("question_text", ""),
            "marks": marks,
            "answer": answer,
        }

        if q.get("type") == "CODING":
            run = coding_results.get(qid)
            if run and run.get("total_tests"):
                earned = marks * run["tests_passed"] / run["total_tests"]
                entry["tests_passed"] = run["tests_passed"]
                entry["total_tests"] = run["total_tests"]
            entry["is_correct"] = bool(run) and run.get("status") == "accepted"
        else:
            is_correct = bool(grade_answer(q, answer))
            earned = marks if is_correct else 0.0
            entry["is_correct"] = is_correct
            entry["correct_answer"] = _display_correct_answer(q)
            entry["explanation"] = q.get("explanation", "")

        entry["earned"] = round(earned, 2)
        score += earned
        results.append(entry)

    percentage = round(score / total * 100, 2) if total else 0.0
    return {
        "results": results,
        "score": round(score, 2),
        "total_marks": round(total, 2),
        "percentage": percentage,
        "correct_count": sum(1 for r in results if r["is_correct"]),
    }


def _display_correct_answer(question):
    if question.get("type") == "MCQ":
        options = question.get("options") or []
        idx = normalize_mcq_selection(question.get("correct_option"))
        if isinstance(idx, int) and 0 <= idx < len(options):
            return options[idx]
    if question.get("correct_answer"):
        return question["correct_answer"]
    accepted = question.get("accepted_answers") or []
    return accepted[0] if accepted else ""


class QuestionNavigator:
    """Position within an attempt's question list (0-based index)."""

    def __init__(self, total, index=0):
        self.total = max(int(total), 0)
        self.index = min(max(int(index), 0), max(self.total - 1, 0))

    @property
    def is_first(self):
        return self.index == 0

    @property
    def is_last(self):
        return self.index >= self.total - 1

    def previous(self):
        return self.index - 1 if not self.is_first else self.index

    def next(self):
        return self.index + 1 if not self.is_last else self.index

    def jump(self, number):
        """1-based jump; out of range keeps the current position."""
        try:
            number = int(number)
        except (TypeError, ValueError):
            return self.index
        if 1 <= number <= self.total:
            return number - 1
        return self.index

    def progress_percentage(self):
        if not self.total:
            return 0.0
        return (self.index + 1) / self.total * 100


def answered_count(answers):
    return sum(1 for v in (answers or {}).values() if v not in (None, ""))


def _as_utc(value):
    if not value:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def window_state(assessment, now=None, grace_seconds=0):
    """'open', 'not_open' or 'closed' for an assessment's availability window."""
    now = now or datetime.now(timezone.utc)
    start_time = _as_utc(assessment.get("start_time"))
    end_time = _as_utc(assessment.get("end_time"))
    if start_time and now < start_time:
        return "not_open"
    if end_time and now > end_time + timedelta(seconds=grace_seconds):
        return "closed"
    return "open"


def time_left(started_at, duration_minutes, now=None):
    """Seconds remaining in an attempt. No duration means untimed (None)."""
    if not duration_minutes:
        return None
    now = now or datetime.now(timezone.utc)
    started = _as_utc(started_at)
    deadline = started + timedelta(minutes=float(duration_minutes))
    return max(int((deadline - now).total_seconds()), 0)


GRADE_BANDS = ((90, "A+"), (80, "A"), (70, "B"), (60, "C"), (50, "D"), (40, "E"))


def letter_grade(percent):
    for floor, grade in GRADE_BANDS:
        if percent >= floor:
            return grade
    return "F"


def calculate_weighted_score(components):
    """Weighted percentage over components of (name, score, max, weight).

    Weights are relative, they do not have to sum to 100.
    """
    rows = []
    weight_total = 0.0
    weighted = 0.0
    for comp in components:
        score = float(comp.get("score", 0))
        maximum = float(comp.get("max", 0))
        weight = float(comp.get("weight", 0))
        if maximum <= 0:
            raise ValueError(f"Maximum for '{comp.get('name', '')}' must be positive")
        if weight < 0 or score < 0 or score > maximum:
            raise ValueError(f"Invalid score or weight for '{comp.get('name', '')}'")
        percent = score / maximum * 100
        rows.append({"name": comp.get("name", ""), "percent": round(percent, 2), "weight": weight})
        weight_total += weight
        weighted += percent * weight
    overall = round(weighted / weight_total, 2) if weight_total else 0.0
    return {"components": rows, "percentage": overall, "grade": letter_grade(overall)}


def normalize_questions(raw_questions):
    """Validate faculty-authored assessment questions.

    Returns a cleaned list with an ``id`` on every question, or raises
    ValueError naming the first bad question.
    """
    if not isinstance(raw_questions, list) or not raw_questions:
        raise ValueError("At least one question is required")

    cleaned = []
    seen_ids = set()
    for n, q in enumerate(raw_questions, start=1):
        if not isinstance(q, dict):
            raise ValueError(f"Question {n}: must be an object")
        qtype = str(q.get("type", "")).strip().upper()
        if qtype not in QUESTION_TYPES:
            raise ValueError(f"Question {n}: type must be one of {', '.join(QUESTION_TYPES)}")
        text = str(q.get("question_text", "")).strip()
        if not text:
            raise ValueError(f"Question {n}: question_text is required")
        marks = _marks(q)
        if marks <= 0:
            raise ValueError(f"Question {n}: marks must be positive")

        # Ids become keys of the attempt's answers document
        qid = str(q.get("id") or uuid4().hex).strip()
        if not qid or "." in qid or qid.startswith("$"):
            raise ValueError(f"Question {n}: id cannot be blank, contain '.' or start with '$'")
        if qid in seen_ids:
            raise ValueError(f"Question {n}: duplicate id {qid}")
        seen_ids.add(qid)

        item = {
            "id": qid,
            "type": qtype,
            "question_text": text,
            "marks": marks,
            "explanation": q.get("explanation", ""),
        }
        if qtype == "MCQ":
            options = [str(o) for o in (q.get("options") or []) if str(o).strip()]
            if len(options) < 2:
                raise ValueError(f"Question {n}: MCQ needs at least two options")
            correct = normalize_mcq_selection(q.get("correct_option"))
            if correct is None or not 0 <= correct < len(options):
                raise ValueError(f"Question {n}: correct_option must point at one of the options")
            item.update(options=options, correct_option=correct)
        elif qtype == "SHORT_ANSWER":
            accepted = [str(a) for a in (q.get("accepted_answers") or []) if str(a).strip()]
            if q.get("correct_answer"):
                accepted.append(str(q["correct_answer"]))
            if not accepted:
                raise ValueError(f"Question {n}: short answers need accepted_answers")
            item["accepted_answers"] = accepted
        else:
            item.update(
                language=q.get("language") or "python",
                sample_input=q.get("sample_input", ""),
                sample_output=q.get("sample_output", ""),
                test_cases=q.get("test_cases") or [],
            )
        cleaned.append(item)
    return cleaned
