"""Data access for CampusLab.

Thin wrappers around the MongoDB collections. Every record carries a string
``id`` and the Mongo ``_id`` is never returned to callers.
"""
import logging
import secrets
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from werkzeug.security import generate_password_hash

logger = logging.getLogger(__name__)

ROLES = ("student", "faculty", "admin")

# Never leak Mongo ids or password hashes to views
NO_ID = {"_id": 0}
PUBLIC_USER = {"_id": 0, "password_hash": 0, "reset_token": 0, "reset_expires": 0}


def _now():
    return datetime.now(timezone.utc)


def _new_id():
    return uuid4().hex


class LabStore:
    def __init__(self, db, reset_ttl_minutes=30):
        self.db = db
        self.reset_ttl = timedelta(minutes=reset_ttl_minutes)
        self.users = db["user_profiles"]
        self.assessments = db["assessments"]
        self.test_submissions = db["test_submissions"]
        self.attempts = db["test_attempts"]
        self.materials = db["course_materials"]
        self.questions = db["coding_questions"]
        self.submissions = db["coding_submissions"]

    @classmethod
    def from_config(cls, config):
        # MongoClient connects lazily, so building the store never blocks
        client = MongoClient(config.MONGO_URI, serverSelectionTimeoutMS=5000)
        return cls(client[config.MONGO_DB], reset_ttl_minutes=config.PASSWORD_RESET_TTL_MINUTES)

    def ping(self):
        try:
            self.db.client.admin.command("ping")
            return True
        except Exception as e:
            logger.error(f"MongoDB ping failed: {e}")
            return False

    def ensure_indexes(self):
        self.users.create_index([("email", ASCENDING)], unique=True)
        self.users.create_index([("id", ASCENDING)], unique=True)
        self.assessments.create_index([("id", ASCENDING)], unique=True)
        self.attempts.create_index([("id", ASCENDING)], unique=True)
        self.attempts.create_index([("student_id", ASCENDING), ("status", ASCENDING)])
        self.questions.create_index([("id", ASCENDING)], unique=True)
        self.submissions.create_index([("question_id", ASCENDING), ("submitted_at", DESCENDING)])
        self.test_submissions.create_index([("assessment_id", ASCENDING), ("student_id", ASCENDING)])

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def get_user(self, user_id):
        if not user_id:
            return None
        return self.users.find_one({"id": user_id}, PUBLIC_USER)

    def get_user_by_email(self, email, with_secret=False):
        """Look a user up by (case-insensitive) email.

        ``with_secret`` keeps the password hash, which only the login view needs.
        """
        projection = NO_ID if with_secret else PUBLIC_USER
        return self.users.find_one({"email": (email or "").strip().lower()}, projection)

    def list_users(self, role=None):
        query = {"role": role} if role else {}
        return list(self.users.find(query, PUBLIC_USER).sort("created_at", DESCENDING))

    def create_user(self, email, password, full_name, role):
        email = (email or "").strip().lower()
        if role not in ROLES:
            raise ValueError(f"Invalid role: {role}")
        if not email or not password:
            raise ValueError("Email and password are required")
        if self.users.find_one({"email": email}, {"_id": 1}):
            raise ValueError(f"A user with email {email} already exists")
        record = {
            "id": _new_id(),
            "email": email,
            "full_name": (full_name or "").strip() or email.split("@")[0],
            "role": role,
            "password_hash": generate_password_hash(password),
            "is_active": True,
            "is_blocked": False,
            "created_at": _now().isoformat(),
        }
        self.users.insert_one(dict(record))
        record.pop("password_hash")
        return record

    def update_user(self, user_id, fields):
        allowed = {k: v for k, v in fields.items() if k in ("full_name", "role", "is_blocked", "is_active")}
        if "role" in allowed and allowed["role"] not in ROLES:
            raise ValueError(f"Invalid role: {allowed['role']}")
        if not allowed:
            return False
        result = self.users.update_one({"id": user_id}, {"$set": allowed})
        return result.matched_count > 0

    def set_password(self, user_id, password):
        result = self.users.update_one(
            {"id": user_id},
            {"$set": {"password_hash": generate_password_hash(password)}},
        )
        return result.matched_count > 0

    def delete_user(self, user_id):
        return self.users.delete_one({"id": user_id}).deleted_count > 0

    def names_for(self, user_ids):
        ids = list({i for i in user_ids if i})
        if not ids:
            return {}
        docs = self.users.find({"id": {"$in": ids}}, {"_id": 0, "id": 1, "full_name": 1})
        return {d["id"]: d.get("full_name", "") for d in docs}

    def count_users_by_role(self):
        counts = {role: 0 for role in ROLES}
        for row in self.users.aggregate([{"$group": {"_id": "$role", "count": {"$sum": 1}}}]):
            counts[row["_id"]] = row["count"]
        return counts

    def set_reset_token(self, email):
        token = secrets.token_urlsafe(32)
        result = self.users.update_one(
            {"email": (email or "").strip().lower()},
            {"$set": {"reset_token": token, "reset_expires": (_now() + self.reset_ttl).isoformat()}},
        )
        return token if result.matched_count else None

    def consume_reset_token(self, token, password):
        if not token:
            return False
        user = self.users.find_one({"reset_token": token}, {"_id": 0, "id": 1, "reset_expires": 1})
        if not user:
            return False
        expires = datetime.fromisoformat(user["reset_expires"])
        if expires < _now():
            self.users.update_one({"id": user["id"]}, {"$unset": {"reset_token": "", "reset_expires": ""}})
            return False
        self.users.update_one(
            {"id": user["id"]},
            {
                "$set": {"password_hash": generate_password_hash(password)},
                "$unset": {"reset_token": "", "reset_expires": ""},
            },
        )
        return True

    # ------------------------------------------------------------------
    # Assessments and test submissions
    # ------------------------------------------------------------------

    def create_assessment(self, faculty_id, fields):
        record = dict(fields, id=_new_id(), faculty_id=faculty_id, created_at=_now().isoformat())
        record.setdefault("is_published", False)
        self.assessments.insert_one(dict(record))
        return record

    def update_assessment(self, assessment_id, fields):
        fields = {k: v for k, v in fields.items() if k not in ("id", "faculty_id", "created_at")}
        return self.assessments.update_one({"id": assessment_id}, {"$set": fields}).matched_count > 0

    def delete_assessment(self, assessment_id):
        return self.assessments.delete_one({"id": assessment_id}).deleted_count > 0

    def get_assessment(self, assessment_id):
        return self.assessments.find_one({"id": assessment_id}, NO_ID)

    def list_assessments(self, faculty_id=None, published_only=False):
        query = {}
        if faculty_id:
            query["faculty_id"] = faculty_id
        if published_only:
            query["is_published"] = True
        return list(self.assessments.find(query, NO_ID).sort("created_at", DESCENDING))

    def save_test_submission(self, record):
        record = dict(record, id=_new_id())
        record.setdefault("submitted_at", _now().isoformat())
        self.test_submissions.insert_one(dict(record))
        return record

    def get_test_submission(self, submission_id):
        return self.test_submissions.find_one({"id": submission_id}, NO_ID)

    def find_test_submission(self, assessment_id, student_id):
        return self.test_submissions.find_one({"assessment_id": assessment_id, "student_id": student_id}, NO_ID)

    def list_test_submissions(self, student_id=None, assessment_ids=None):
        query = {}
        if student_id:
            query["student_id"] = student_id
        if assessment_ids is not None:
            query["assessment_id"] = {"$in": list(assessment_ids)}
        return list(self.test_submissions.find(query, NO_ID).sort("submitted_at", DESCENDING))

    def delete_test_submission(self, submission_id):
        return self.test_submissions.delete_one({"id": submission_id}).deleted_count > 0

    def start_attempt(self, assessment_id, student_id):
        record = {
            "id": _new_id(),
            "assessment_id": assessment_id,
            "student_id": student_id,
            "started_at": _now().isoformat(),
            "answers": {},
            "warnings": 0,
            "violations": [],
            "status": "in_progress",
        }
        self.attempts.insert_one(dict(record))
        return record

    def get_attempt(self, attempt_id):
        return self.attempts.find_one({"id": attempt_id}, NO_ID)

    def get_active_attempt(self, student_id):
        return self.attempts.find_one({"student_id": student_id, "status": "in_progress"}, NO_ID)

    def save_answer(self, attempt_id, question_id, answer):
        result = self.attempts.update_one(
            {"id": attempt_id, "status": "in_progress"},
            {"$set": {f"answers.{question_id}": answer}},
        )
        return result.matched_count > 0

    def record_violation(self, attempt_id, violation):
        """Append a violation and return the updated attempt (None when closed)."""
        return self.attempts.find_one_and_update(
            {"id": attempt_id, "status": "in_progress"},
            {"$inc": {"warnings": 1}, "$push": {"violations": violation}},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )

    def close_attempt(self, attempt_id, status="submitted"):
        """Claim an in-progress attempt and close it.

        Returns the closed attempt, or None when another request already
        closed it. Only the caller that gets the record back may grade it.
        """
        return self.attempts.find_one_and_update(
            {"id": attempt_id, "status": "in_progress"},
            {"$set": {"status": status, "closed_at": _now().isoformat()}},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )

    # ------------------------------------------------------------------
    # Course materials
    # ------------------------------------------------------------------

    def create_material(self, faculty_id, fields):
        record = dict(fields, id=_new_id(), faculty_id=faculty_id, created_at=_now().isoformat())
        self.materials.insert_one(dict(record))
        return record

    def update_material(self, material_id, fields):
        fields = {k: v for k, v in fields.items() if k not in ("id", "faculty_id", "created_at")}
        return self.materials.update_one({"id": material_id}, {"$set": fields}).matched_count > 0

    def delete_material(self, material_id):
        return self.materials.delete_one({"id": material_id}).deleted_count > 0

    def get_material(self, material_id):
        return self.materials.find_one({"id": material_id}, NO_ID)

    def list_materials(self, faculty_id=None):
        query = {"faculty_id": faculty_id} if faculty_id else {}
        return list(self.materials.find(query, NO_ID).sort([("course", ASCENDING), ("created_at", DESCENDING)]))

    # ------------------------------------------------------------------
    # Coding lab
    # ------------------------------------------------------------------

    def get_question(self, question_id):
        return self.questions.find_one({"id": question_id}, NO_ID)

    def list_published_questions(self):
        return list(self.questions.find({"is_published": True}, NO_ID).sort("created_at", DESCENDING))

    def list_faculty_questions(self, faculty_id):
        return list(self.questions.find({"faculty_id": faculty_id}, NO_ID).sort("created_at", DESCENDING))

    def create_question(self, faculty_id, fields):
        record = dict(fields, id=_new_id(), faculty_id=faculty_id, created_at=_now().isoformat())
        self.questions.insert_one(dict(record))
        return record

    def update_question(self, question_id, fields):
        fields = {k: v for k, v in fields.items() if k not in ("id", "faculty_id", "created_at")}
        return self.questions.update_one({"id": question_id}, {"$set": fields}).matched_count > 0

    def delete_question(self, question_id):
        return self.questions.delete_one({"id": question_id}).deleted_count > 0

    def save_submission(self, record):
        record = dict(record, id=_new_id())
        self.submissions.insert_one(dict(record))
        return record

    def get_submission(self, submission_id):
        return self.submissions.find_one({"id": submission_id}, NO_ID)

    def list_student_submissions(self, student_id):
        return list(self.submissions.find({"student_id": student_id}, NO_ID).sort("submitted_at", DESCENDING))

    def list_question_submissions(self, question_id):
        return list(self.submissions.find({"question_id": question_id}, NO_ID).sort("submitted_at", DESCENDING))

    def submission_counts(self, question_ids):
        ids = list(question_ids)
        if not ids:
            return {}
        counts = defaultdict(int)
        for sub in self.submissions.find({"question_id": {"$in": ids}}, {"_id": 0, "question_id": 1}):
            counts[sub["question_id"]] += 1
        return dict(counts)

    def delete_submission(self, submission_id):
        return self.submissions.delete_one({"id": submission_id}).deleted_count > 0

    def coding_stats(self):
        """Per-question totals for the admin coding analytics page."""
        pipeline = [
            {
                "$group": {
                    "_id": "$question_id",
                    "total": {"$sum": 1},
                    "accepted": {"$sum": {"$cond": [{"$eq": ["$status", "accepted"]}, 1, 0]}},
                    "students": {"$addToSet": "$student_id"},
                }
            }
        ]
        stats = {}
        for row in self.submissions.aggregate(pipeline):
            stats[row["_id"]] = {
                "total": row["total"],
                "accepted": row["accepted"],
                "students": len(row["students"]),
            }
        return stats
