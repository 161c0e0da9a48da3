import csv
import json
import logging
from datetime import datetime, timezone
from io import BytesIO, StringIO
from collections import defaultdict

from flask import Flask, render_template, request, redirect, url_for, session, jsonify, abort, send_file, flash, g
from flask_cors import CORS
from werkzeug.security import check_password_hash
import openai

from config import Config
from store import LabStore, ROLES
from coding_lab import (
	PistonClient,
	CodeExecutionError,
	CODE_TEMPLATES,
	DIFFICULTIES,
	EDITOR_LANGUAGES,
	build_test_cases,
	execute_and_save,
	normalize_coding_question,
)
from grading import (
	QuestionNavigator,
	answered_count,
	calculate_weighted_score,
	grade_submission,
	normalize_questions,
	time_left,
	window_state,
)

# Configure logging
logging.basicConfig(level=getattr(logging, Config.LOG_LEVEL, logging.INFO))
logger = logging.getLogger(__name__)

app = Flask(__name__, template_folder='.')  # index.html lives next to app.py

# Configure app
app.config.from_object(Config)
app.secret_key = Config.SECRET_KEY

# Enable CORS for all routes (allow credentials for session cookies)
CORS(app, supports_credentials=True)

# Remote services; MongoClient connects lazily so import never blocks
store = LabStore.from_config(Config)
piston = PistonClient.from_config(Config)

if Config.OPENAI_API_KEY:
	openai.api_key = Config.OPENAI_API_KEY
else:
	logger.warning("OPENAI_API_KEY not set, AI assistant will answer with a fallback message")

AI_HISTORY_LIMIT = 6
AI_SYSTEM_ROLE = """You are a friendly study assistant for university students.
Explain concepts step by step, prefer short examples, and never hand out full
solutions to graded assessments."""

# Endpoints a student may reach while a test attempt is in progress
ATTEMPT_ENDPOINTS = {"take_test", "take_test_answer", "take_test_submit", "take_test_violation", "logout", "health_check", "static"}


# ----------------------------------------------------------------------
# Auth helpers
# ----------------------------------------------------------------------

def current_user():
	if "user" not in g:
		user = store.get_user(session.get("user_id"))
		if user and (user.get("is_blocked") or not user.get("is_active", True)):
			session.clear()
			user = None
		g.user = user
	return g.user


def require_role(*roles):
	"""Redirect to login unless the signed-in user holds one of ``roles``."""
	user = current_user()
	if not user:
		return redirect(url_for("login"))
	if roles and user.get("role") not in roles:
		flash("You do not have access to that page.", "error")
		return redirect(url_for("login"))
	return None


def require_role_json(*roles):
	user = current_user()
	if not user:
		return jsonify({"ok": False, "error": "Not authenticated"}), 401
	if roles and user.get("role") not in roles:
		return jsonify({"ok": False, "error": "Not authorized"}), 403
	return None


def wants_json():
	return request.is_json or request.accept_mimetypes.best == "application/json"


def respond(ok, message, endpoint, status=None, **values):
	"""JSON for API callers, flash + redirect for form posts."""
	if wants_json():
		code = status or (200 if ok else 400)
		return jsonify({"ok": ok, ("message" if ok else "error"): message}), code
	flash(message, "success" if ok else "error")
	return redirect(url_for(endpoint, **values))


def _form_or_json():
	if request.is_json:
		return request.get_json(silent=True) or {}
	return request.form.to_dict()


@app.context_processor
def inject_user():
	return {"current_user": current_user()}


@app.before_request
def enforce_session_lock():
	"""Keep students inside an in-progress test until they submit."""
	attempt_id = session.get("attempt_id")
	if not attempt_id or request.endpoint in ATTEMPT_ENDPOINTS:
		return None
	attempt = store.get_attempt(attempt_id)
	if not attempt or attempt.get("status") != "in_progress" or _abandon_if_withdrawn(attempt):
		session.pop("attempt_id", None)
		return None
	if wants_json():
		return jsonify({"ok": False, "error": "Finish your test first"}), 423
	return redirect(url_for("take_test", assessment_id=attempt["assessment_id"]))


# ----------------------------------------------------------------------
# Public routes
# ----------------------------------------------------------------------

@app.route("/")
def index():
	user = current_user()
	if not user:
		return redirect(url_for("login"))
	role = user.get("role")
	if role == "admin":
		return redirect(url_for("admin_dashboard"))
	if role == "faculty":
		return faculty_dashboard(user)
	return student_dashboard(user)


@app.route('/health', methods=['GET'])
def health_check():
	"""Health check endpoint"""
	connected = store.ping()
	return jsonify({
		'status': 'healthy' if connected else 'degraded',
		'mongodb': 'Connected' if connected else 'Disconnected',
	}), 200 if connected else 503


@app.route("/login", methods=["GET", "POST"])
def login():
	if current_user():
		return redirect(url_for("index"))
	if request.method == "POST":
		email = request.form.get("email", "").strip().lower()
		password = request.form.get("password", "")
		user = store.get_user_by_email(email, with_secret=True)
		if not user or not check_password_hash(user.get("password_hash", ""), password):
			return render_template("index.html", view="login", error="Invalid email or password"), 401
		if user.get("is_blocked"):
			return render_template("index.html", view="login", error="Your account has been blocked. Contact an administrator."), 403
		if not user.get("is_active", True):
			return render_template("index.html", view="login", error="Your account is inactive."), 403
		session.clear()
		session["user_id"] = user["id"]
		session["user_role"] = user["role"]
		if user["role"] == "student":
			active = store.get_active_attempt(user["id"])
			if active:
				session["attempt_id"] = active["id"]
		logger.info("User logged in", extra={"user_id": user["id"], "role": user["role"]})
		return redirect(url_for("index"))
	return render_template("index.html", view="login")


@app.route("/logout")
def logout():
	session.clear()
	return redirect(url_for("login"))


@app.route("/reset-password", methods=["GET", "POST"])
def reset_password():
	token = request.values.get("token", "")
	if request.method == "POST" and token:
		password = request.form.get("password", "")
		confirm = request.form.get("confirm_password", "")
		if len(password) < 6 or password != confirm:
			return render_template("index.html", view="reset_password", token=token,
				error="Passwords must match and be at least 6 characters"), 400
		if not store.consume_reset_token(token, password):
			return render_template("index.html", view="reset_password",
				error="This reset link is invalid or has expired"), 400
		flash("Password updated. Please sign in.", "success")
		return redirect(url_for("login"))

	if request.method == "POST":
		email = request.form.get("email", "").strip().lower()
		reset_token = store.set_reset_token(email)
		if reset_token:
			# No mail delivery; the link goes to the server log
			logger.info(f"Password reset link for {email}: {url_for('reset_password', token=reset_token, _external=True)}")
		# Same answer either way so emails cannot be probed
		flash("If that account exists, a reset link has been issued.", "success")
		return redirect(url_for("login"))

	return render_template("index.html", view="reset_password", token=token)


@app.route("/profile", methods=["GET", "POST"])
def profile():
	redir = require_role()
	if redir:
		return redir
	user = current_user()
	if request.method == "POST":
		full_name = request.form.get("full_name", "").strip()
		if not full_name:
			return render_template("index.html", view="profile", user=user, error="Name cannot be empty"), 400
		store.update_user(user["id"], {"full_name": full_name})
		flash("Profile updated", "success")
		return redirect(url_for("profile"))
	return render_template("index.html", view="profile", user=user)


@app.route("/change-password", methods=["GET", "POST"])
def change_password():
	redir = require_role()
	if redir:
		return redir
	user = current_user()
	if request.method == "POST":
		current = request.form.get("current_password", "")
		new = request.form.get("new_password", "")
		confirm = request.form.get("confirm_password", "")
		secret = store.get_user_by_email(user["email"], with_secret=True)
		error = None
		if not secret or not check_password_hash(secret.get("password_hash", ""), current):
			error = "Current password is incorrect"
		elif len(new) < 6:
			error = "New password must be at least 6 characters"
		elif new != confirm:
			error = "New passwords do not match"
		if error:
			return render_template("index.html", view="change_password", error=error), 400
		store.set_password(user["id"], new)
		flash("Password changed", "success")
		return redirect(url_for("index"))
	return render_template("index.html", view="change_password")


@app.route("/api/me")
def api_me():
	redir = require_role_json()
	if redir:
		return redir
	return jsonify({"ok": True, "user": current_user()})


# ----------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------

@app.route("/admin")
def admin_dashboard():
	redir = require_role("admin")
	if redir:
		return redir
	counts = store.count_users_by_role()
	recent_users = store.list_users()[:10]
	return render_template("index.html", view="admin_dashboard",
		counts=counts,
		assessment_count=len(store.list_assessments()),
		submission_count=len(store.list_test_submissions()),
		coding_question_count=len(store.list_published_questions()),
		recent_users=recent_users)


@app.route("/admin/users")
def admin_users():
	redir = require_role("admin")
	if redir:
		return redir
	role = request.args.get("role") or None
	if role and role not in ROLES:
		role = None
	users = store.list_users(role)
	return render_template("index.html", view="admin_users", users=users, role_filter=role, roles=ROLES)


@app.route("/admin/users/create", methods=["POST"])
def admin_create_user():
	redir = require_role("admin")
	if redir:
		return redir
	data = _form_or_json()
	try:
		user = store.create_user(data.get("email"), data.get("password"), data.get("full_name"), data.get("role"))
	except ValueError as e:
		return respond(False, str(e), "admin_users")
	logger.info("User created", extra={"created_user": user["id"], "role": user["role"]})
	return respond(True, f"User {user['email']} created", "admin_users", status=201)


@app.route("/admin/users/bulk", methods=["POST"])
def admin_bulk_create_users():
	redir = require_role("admin")
	if redir:
		return redir

	if 'csv_file' not in request.files:
		return jsonify({"ok": False, "error": "No CSV file uploaded"}), 400
	file = request.files['csv_file']
	if not file.filename or not file.filename.endswith('.csv'):
		return jsonify({"ok": False, "error": "File must be a CSV file"}), 400

	stream = StringIO(file.stream.read().decode("utf-8"), newline=None)
	csv_reader = csv.DictReader(stream)
	required_headers = ['email', 'password', 'role']
	if not csv_reader.fieldnames or not all(h in csv_reader.fieldnames for h in required_headers):
		return jsonify({"ok": False, "error": f"CSV must contain headers: {', '.join(required_headers)}. Optional: full_name"}), 400

	created_users = []
	errors = []
	for row_num, row in enumerate(csv_reader, start=2):  # row 1 is the header
		email = (row.get('email') or '').strip()
		if not email:
			continue
		try:
			store.create_user(email, (row.get('password') or '').strip(), row.get('full_name'), (row.get('role') or '').strip().lower())
			created_users.append(email)
		except ValueError as e:
			errors.append(f"Row {row_num}: {e}")

	return jsonify({
		"ok": True,
		"created": len(created_users),
		"errors": len(errors),
		"details": {"created_users": created_users, "errors": errors},
	})


@app.route("/admin/users/<user_id>/block", methods=["POST"])
def admin_toggle_block(user_id):
	redir = require_role("admin")
	if redir:
		return redir
	if user_id == current_user()["id"]:
		return respond(False, "You cannot block yourself", "admin_users")
	target = store.get_user(user_id)
	if not target:
		return respond(False, "User not found", "admin_users", status=404)
	blocked = not target.get("is_blocked", False)
	store.update_user(user_id, {"is_blocked": blocked})
	return respond(True, f"User {'blocked' if blocked else 'unblocked'}", "admin_users")


@app.route("/admin/users/<user_id>/role", methods=["POST"])
def admin_change_role(user_id):
	redir = require_role("admin")
	if redir:
		return redir
	role = _form_or_json().get("role")
	try:
		updated = store.update_user(user_id, {"role": role})
	except ValueError as e:
		return respond(False, str(e), "admin_users")
	if not updated:
		return respond(False, "User not found", "admin_users", status=404)
	return respond(True, f"Role changed to {role}", "admin_users")


@app.route("/admin/users/<user_id>/delete", methods=["POST"])
def admin_delete_user(user_id):
	redir = require_role("admin")
	if redir:
		return redir
	if user_id == current_user()["id"]:
		return respond(False, "You cannot delete your own account", "admin_users")
	if store.delete_user(user_id):
		return respond(True, "User deleted", "admin_users")
	return respond(False, "User not found", "admin_users", status=404)


@app.route("/admin/users/export")
def admin_export_users():
	redir = require_role("admin")
	if redir:
		return redir
	output = StringIO()
	writer = csv.writer(output)
	writer.writerow(['Email', 'Full Name', 'Role', 'Blocked', 'Active', 'Created At'])
	for user in store.list_users():
		writer.writerow([
			user.get('email', ''),
			user.get('full_name', ''),
			user.get('role', ''),
			user.get('is_blocked', False),
			user.get('is_active', True),
			user.get('created_at', ''),
		])
	return send_file(
		BytesIO(output.getvalue().encode('utf-8')),
		mimetype='text/csv',
		as_attachment=True,
		download_name=f'users_export_{datetime.now().strftime("%Y%m%d_%H%M%S")}.csv'
	)


@app.route("/admin/analytics")
def admin_analytics():
	redir = require_role("admin")
	if redir:
		return redir
	submissions = store.list_test_submissions()
	assessments = store.list_assessments()
	titles = {a["id"]: a.get("title", "") for a in assessments}

	per_assessment = defaultdict(list)
	for sub in submissions:
		per_assessment[sub.get("assessment_id")].append(sub.get("percentage", 0))
	assessment_stats = [
		{
			"assessment_id": aid,
			"title": titles.get(aid, "Deleted assessment"),
			"attempts": len(scores),
			"average": round(sum(scores) / len(scores), 2),
			"best": max(scores),
		}
		for aid, scores in per_assessment.items()
	]
	assessment_stats.sort(key=lambda s: s["attempts"], reverse=True)

	all_scores = [s.get("percentage", 0) for s in submissions]
	return render_template("index.html", view="admin_analytics",
		counts=store.count_users_by_role(),
		assessment_count=len(assessments),
		published_count=sum(1 for a in assessments if a.get("is_published")),
		submission_count=len(submissions),
		average_percentage=round(sum(all_scores) / len(all_scores), 2) if all_scores else 0.0,
		assessment_stats=assessment_stats)


def _submission_rows(submissions):
	names = store.names_for(s.get("student_id") for s in submissions)
	return [dict(s, student_name=names.get(s.get("student_id"), "Unknown Student")) for s in submissions]


@app.route("/admin/submissions")
def admin_submissions():
	redir = require_role("admin")
	if redir:
		return redir
	submissions = _submission_rows(store.list_test_submissions())
	return render_template("index.html", view="admin_submissions", submissions=submissions)


@app.route("/admin/submissions/<submission_id>/delete", methods=["POST"])
def admin_delete_submission(submission_id):
	redir = require_role("admin")
	if redir:
		return redir
	if store.delete_test_submission(submission_id):
		logger.info(f"Test submission {submission_id} deleted")
		return respond(True, "Submission deleted", "admin_submissions")
	return respond(False, "Submission not found", "admin_submissions", status=404)


@app.route("/admin/submissions/export")
def admin_export_submissions():
	redir = require_role("admin")
	if redir:
		return redir
	output = StringIO()
	writer = csv.writer(output)
	writer.writerow(['Student', 'Assessment', 'Score', 'Total Marks', 'Percentage', 'Warnings', 'Submitted At'])
	for sub in _submission_rows(store.list_test_submissions()):
		writer.writerow([
			sub.get('student_name', ''),
			sub.get('assessment_title', ''),
			sub.get('score', 0),
			sub.get('total_marks', 0),
			sub.get('percentage', 0),
			sub.get('warning_count', 0),
			sub.get('submitted_at', ''),
		])
	return send_file(
		BytesIO(output.getvalue().encode('utf-8')),
		mimetype='text/csv',
		as_attachment=True,
		download_name=f'submissions_export_{datetime.now().strftime("%Y%m%d_%H%M%S")}.csv'
	)


@app.route("/admin/coding-analytics")
def admin_coding_analytics():
	redir = require_role("admin")
	if redir:
		return redir
	stats = store.coding_stats()
	questions = store.list_published_questions()
	rows = []
	for q in questions:
		s = stats.get(q["id"], {"total": 0, "accepted": 0, "students": 0})
		rows.append({
			"id": q["id"],
			"title": q.get("title", ""),
			"difficulty": q.get("difficulty", ""),
			"total": s["total"],
			"accepted": s["accepted"],
			"students": s["students"],
			"acceptance_rate": round(s["accepted"] / s["total"] * 100, 1) if s["total"] else 0.0,
		})
	return render_template("index.html", view="admin_coding_analytics", rows=rows,
		total_submissions=sum(r["total"] for r in rows))


# ----------------------------------------------------------------------
# Faculty
# ----------------------------------------------------------------------

def faculty_dashboard(user):
	assessments = store.list_assessments(faculty_id=user["id"])
	submissions = store.list_test_submissions(assessment_ids=[a["id"] for a in assessments])
	counts = defaultdict(int)
	for sub in submissions:
		counts[sub.get("assessment_id")] += 1
	return render_template("index.html", view="faculty_dashboard", assessments=assessments,
		submission_counts=counts, question_count=len(store.list_faculty_questions(user["id"])))


def _owned_assessment(assessment_id):
	assessment = store.get_assessment(assessment_id)
	if not assessment or assessment.get("faculty_id") != current_user()["id"]:
		abort(404)
	return assessment


def _assessment_fields(data):
	"""Parse the assessment form. Raises ValueError with a user-facing message."""
	title = (data.get("title") or "").strip()
	if not title:
		raise ValueError("Title is required")
	questions = data.get("questions")
	if questions is None:
		try:
			questions = json.loads(data.get("questions_json") or "[]")
		except json.JSONDecodeError as e:
			raise ValueError(f"Questions must be valid JSON: {e.msg}")
	try:
		duration = int(data.get("duration_minutes") or 0)
	except (TypeError, ValueError):
		raise ValueError("Duration must be a whole number of minutes")
	if duration < 0:
		raise ValueError("Duration cannot be negative")
	start_time = data.get("start_time") or None
	end_time = data.get("end_time") or None
	try:
		if start_time and end_time and datetime.fromisoformat(start_time) >= datetime.fromisoformat(end_time):
			raise ValueError("End time must be after start time")
	except TypeError:
		raise ValueError("Start and end times must use the same timezone format")
	published = data.get("is_published")
	if isinstance(published, str):
		published = published.lower() in ("1", "true", "on", "yes")
	return {
		"title": title,
		"description": (data.get("description") or "").strip(),
		"course": (data.get("course") or "").strip(),
		"duration_minutes": duration,
		"start_time": start_time,
		"end_time": end_time,
		"is_published": bool(published),
		"questions": normalize_questions(questions),
	}


@app.route("/create-assessment", methods=["GET", "POST"])
def create_assessment():
	redir = require_role("faculty")
	if redir:
		return redir
	if request.method == "POST":
		data = _form_or_json()
		try:
			fields = _assessment_fields(data)
		except ValueError as e:
			if wants_json():
				return jsonify({"ok": False, "error": str(e)}), 400
			return render_template("index.html", view="assessment_form", assessment=data, error=str(e)), 400
		assessment = store.create_assessment(current_user()["id"], fields)
		logger.info(f"Assessment {assessment['id']} created with {len(fields['questions'])} questions")
		if wants_json():
			return jsonify({"ok": True, "assessment_id": assessment["id"]}), 201
		flash("Assessment created", "success")
		return redirect(url_for("index"))
	return render_template("index.html", view="assessment_form", assessment=None)


@app.route("/assessments/<assessment_id>/edit", methods=["GET", "POST"])
def edit_assessment(assessment_id):
	redir = require_role("faculty")
	if redir:
		return redir
	assessment = _owned_assessment(assessment_id)
	if request.method == "POST":
		data = _form_or_json()
		try:
			fields = _assessment_fields(data)
		except ValueError as e:
			if wants_json():
				return jsonify({"ok": False, "error": str(e)}), 400
			return render_template("index.html", view="assessment_form", assessment=dict(data, id=assessment_id), error=str(e)), 400
		store.update_assessment(assessment_id, fields)
		return respond(True, "Assessment updated", "index")
	return render_template("index.html", view="assessment_form", assessment=assessment,
		questions_json=json.dumps(assessment.get("questions", []), indent=2))


@app.route("/assessments/<assessment_id>/publish", methods=["POST"])
def publish_assessment(assessment_id):
	redir = require_role("faculty")
	if redir:
		return redir
	assessment = _owned_assessment(assessment_id)
	published = not assessment.get("is_published", False)
	store.update_assessment(assessment_id, {"is_published": published})
	return respond(True, "Assessment published" if published else "Assessment unpublished", "index")


@app.route("/assessments/<assessment_id>/delete", methods=["POST"])
def delete_assessment(assessment_id):
	redir = require_role("faculty")
	if redir:
		return redir
	_owned_assessment(assessment_id)
	store.delete_assessment(assessment_id)
	return respond(True, "Assessment deleted", "index")


@app.route("/course-materials", methods=["GET", "POST"])
def course_materials():
	redir = require_role("faculty")
	if redir:
		return redir
	user = current_user()
	if request.method == "POST":
		data = _form_or_json()
		title = (data.get("title") or "").strip()
		course = (data.get("course") or "").strip()
		if not title or not course:
			return respond(False, "Title and course are required", "course_materials")
		fields = {
			"title": title,
			"course": course,
			"description": (data.get("description") or "").strip(),
			"url": (data.get("url") or "").strip(),
		}
		material_id = data.get("material_id")
		if material_id:
			material = store.get_material(material_id)
			if not material or material.get("faculty_id") != user["id"]:
				return respond(False, "Material not found", "course_materials", status=404)
			store.update_material(material_id, fields)
			return respond(True, "Material updated", "course_materials")
		store.create_material(user["id"], fields)
		return respond(True, "Material added", "course_materials", status=201)
	return render_template("index.html", view="course_materials", materials=store.list_materials(faculty_id=user["id"]))


@app.route("/course-materials/<material_id>/delete", methods=["POST"])
def delete_material(material_id):
	redir = require_role("faculty")
	if redir:
		return redir
	material = store.get_material(material_id)
	if not material or material.get("faculty_id") != current_user()["id"]:
		return respond(False, "Material not found", "course_materials", status=404)
	store.delete_material(material_id)
	return respond(True, "Material deleted", "course_materials")


@app.route("/faculty/student")
def faculty_students():
	redir = require_role("faculty")
	if redir:
		return redir
	assessments = store.list_assessments(faculty_id=current_user()["id"])
	titles = {a["id"]: a.get("title", "") for a in assessments}
	results = defaultdict(list)
	for sub in store.list_test_submissions(assessment_ids=list(titles)):
		results[sub["student_id"]].append(dict(sub, assessment_title=titles.get(sub["assessment_id"], "")))
	students = store.list_users("student")
	return render_template("index.html", view="faculty_students", students=students, results=results)


@app.route("/coding-management", methods=["GET", "POST"])
def coding_management():
	redir = require_role("faculty")
	if redir:
		return redir
	user = current_user()
	if request.method == "POST":
		data = _form_or_json()
		if not request.is_json and data.get("test_cases_json"):
			try:
				data["test_cases"] = json.loads(data["test_cases_json"])
			except json.JSONDecodeError as e:
				return respond(False, f"Test cases must be valid JSON: {e.msg}", "coding_management")
		try:
			fields = normalize_coding_question(data)
		except ValueError as e:
			return respond(False, str(e), "coding_management")
		question_id = data.get("question_id")
		if question_id:
			question = store.get_question(question_id)
			if not question or question.get("faculty_id") != user["id"]:
				return respond(False, "Problem not found", "coding_management", status=404)
			store.update_question(question_id, fields)
			return respond(True, "Problem updated", "coding_management")
		store.create_question(user["id"], fields)
		return respond(True, "Problem created", "coding_management", status=201)

	questions = store.list_faculty_questions(user["id"])
	counts = store.submission_counts(q["id"] for q in questions)
	editing = None
	if request.args.get("edit"):
		editing = next((q for q in questions if q["id"] == request.args["edit"]), None)
	return render_template("index.html", view="coding_management", questions=questions,
		submission_counts=counts, editing=editing, difficulties=DIFFICULTIES, languages=EDITOR_LANGUAGES)


def _owned_question(question_id):
	question = store.get_question(question_id)
	if not question or question.get("faculty_id") != current_user()["id"]:
		abort(404)
	return question


@app.route("/coding-management/<question_id>/delete", methods=["POST"])
def delete_coding_question(question_id):
	redir = require_role("faculty")
	if redir:
		return redir
	_owned_question(question_id)
	store.delete_question(question_id)
	return respond(True, "Problem deleted", "coding_management")


@app.route("/coding-management/<question_id>/submissions")
def coding_question_submissions(question_id):
	redir = require_role("faculty")
	if redir:
		return redir
	question = _owned_question(question_id)
	submissions = _submission_rows(store.list_question_submissions(question_id))
	if wants_json():
		return jsonify({"ok": True, "question": question["title"], "submissions": submissions})
	return render_template("index.html", view="coding_submissions", question=question, submissions=submissions)


@app.route("/coding-management/submissions/<submission_id>/delete", methods=["POST"])
def delete_coding_submission(submission_id):
	redir = require_role("faculty")
	if redir:
		return redir
	submission = store.get_submission(submission_id)
	if not submission:
		return respond(False, "Submission not found", "coding_management", status=404)
	_owned_question(submission["question_id"])
	store.delete_submission(submission_id)
	return respond(True, "Submission deleted", "coding_question_submissions", question_id=submission["question_id"])


# ----------------------------------------------------------------------
# Student
# ----------------------------------------------------------------------

def student_dashboard(user):
	assessments = store.list_assessments(published_only=True)
	submissions = store.list_test_submissions(student_id=user["id"])
	attempted = {s["assessment_id"] for s in submissions}
	now = datetime.now(timezone.utc)
	for a in assessments:
		a["window"] = window_state(a, now)
	return render_template("index.html", view="student_dashboard", assessments=assessments,
		attempted=attempted, recent_results=submissions[:5])


def _abandon_if_withdrawn(attempt):
	"""Close an attempt whose assessment was deleted or unpublished mid-test."""
	assessment = store.get_assessment(attempt["assessment_id"])
	if assessment and assessment.get("is_published"):
		return False
	store.close_attempt(attempt["id"], status="abandoned")
	session.pop("attempt_id", None)
	logger.info("Test attempt abandoned, assessment withdrawn", extra={"attempt_id": attempt["id"], "assessment_id": attempt["assessment_id"]})
	return True


def _load_attempt(user, assessment):
	"""Return (attempt, error_message) for a student opening an assessment."""
	active = store.get_active_attempt(user["id"])
	if active and not _abandon_if_withdrawn(active):
		return active, None
	if store.find_test_submission(assessment["id"], user["id"]):
		return None, "You have already completed this test. You cannot attempt it again."
	state = window_state(assessment)
	if state == "not_open":
		return None, "Test not yet open. Please return at the scheduled start time."
	if state == "closed":
		return None, "Test has expired. The test window has closed."
	if not assessment.get("questions"):
		return None, "This test has no questions yet."
	attempt = store.start_attempt(assessment["id"], user["id"])
	logger.info("Test attempt started", extra={"student_id": user["id"], "assessment_id": assessment["id"]})
	return attempt, None


def _attempt_expired(assessment, attempt):
	remaining = time_left(attempt["started_at"], assessment.get("duration_minutes"))
	if remaining == 0:
		return True
	return window_state(assessment, grace_seconds=Config.SUBMISSION_GRACE_SECONDS) == "closed"


def finalize_attempt(user, assessment, attempt, reason="submitted"):
	"""Grade an attempt, persist the submission and release the session lock.

	Returns None when another request already closed the attempt.
	"""
	session.pop("attempt_id", None)
	attempt = store.close_attempt(attempt["id"])
	if not attempt:
		return None

	questions = assessment.get("questions", [])
	answers = attempt.get("answers", {})

	coding_results = {}
	for q in questions:
		code = answers.get(str(q["id"]))
		if q.get("type") != "CODING" or not code:
			continue
		cases = build_test_cases(q)
		if cases:
			coding_results[str(q["id"])] = piston.execute(code, q.get("language", "python"), cases).to_dict()

	grading = grade_submission(questions, answers, coding_results)
	submission = store.save_test_submission({
		"assessment_id": assessment["id"],
		"assessment_title": assessment.get("title", ""),
		"faculty_id": assessment.get("faculty_id"),
		"student_id": user["id"],
		"answers": answers,
		"results": grading["results"],
		"score": grading["score"],
		"total_marks": grading["total_marks"],
		"percentage": grading["percentage"],
		"correct_count": grading["correct_count"],
		"violations": attempt.get("violations", []),
		"warning_count": attempt.get("warnings", 0),
		"started_at": attempt.get("started_at"),
		"submit_reason": reason,
	})
	logger.info(
		"Test submitted",
		extra={"student_id": user["id"], "assessment_id": assessment["id"], "percentage": grading["percentage"], "reason": reason},
	)
	return submission


def _result_url(submission):
	if not submission:
		flash("This test has already been submitted.", "error")
		return url_for("index")
	return url_for("results_summary", submission_id=submission["id"])


def _student_assessment(assessment_id):
	assessment = store.get_assessment(assessment_id)
	if not assessment or not assessment.get("is_published"):
		active = store.get_active_attempt(current_user()["id"])
		if active and active["assessment_id"] == assessment_id:
			_abandon_if_withdrawn(active)
		abort(404)
	return assessment


@app.route("/take-test/<assessment_id>")
def take_test(assessment_id):
	redir = require_role("student")
	if redir:
		return redir
	user = current_user()
	assessment = _student_assessment(assessment_id)

	attempt, error = _load_attempt(user, assessment)
	if error:
		return render_template("index.html", view="test_unavailable", assessment=assessment, error=error)
	if attempt["assessment_id"] != assessment_id:
		return redirect(url_for("take_test", assessment_id=attempt["assessment_id"]))
	session["attempt_id"] = attempt["id"]

	if _attempt_expired(assessment, attempt):
		submission = finalize_attempt(user, assessment, attempt, reason="time_expired")
		if submission:
			flash("Time is up. Your answers were submitted automatically.", "error")
		return redirect(_result_url(submission))

	questions = assessment["questions"]
	nav = QuestionNavigator(len(questions))
	nav = QuestionNavigator(len(questions), nav.jump(request.args.get("q", 1)))
	question = questions[nav.index]
	# Correct answers never reach the page
	visible = {k: question.get(k) for k in ("id", "type", "question_text", "marks", "options", "language", "sample_input", "sample_output")}
	answers = attempt.get("answers", {})
	return render_template("index.html", view="take_test",
		assessment=assessment,
		question=visible,
		nav=nav,
		answers=answers,
		answered=answered_count(answers),
		current_answer=answers.get(str(question["id"]), ""),
		time_left=time_left(attempt["started_at"], assessment.get("duration_minutes")),
		warnings=attempt.get("warnings", 0),
		max_violations=Config.MAX_VIOLATIONS)


def _active_attempt_for(user, assessment_id):
	attempt = store.get_active_attempt(user["id"])
	if not attempt or attempt["assessment_id"] != assessment_id:
		return None
	return attempt


@app.route("/take-test/<assessment_id>/answer", methods=["POST"])
def take_test_answer(assessment_id):
	redir = require_role("student")
	if redir:
		return redir
	user = current_user()
	assessment = _student_assessment(assessment_id)
	attempt = _active_attempt_for(user, assessment_id)
	if not attempt:
		return respond(False, "No test in progress", "index")

	if _attempt_expired(assessment, attempt):
		submission = finalize_attempt(user, assessment, attempt, reason="time_expired")
		if wants_json():
			return jsonify({"ok": False, "error": "Time is up", "redirect": _result_url(submission)}), 409
		return redirect(_result_url(submission))

	data = _form_or_json()
	question_id = str(data.get("question_id") or "")
	if question_id not in {str(q["id"]) for q in assessment["questions"]}:
		return respond(False, "Unknown question", "take_test", assessment_id=assessment_id)
	store.save_answer(attempt["id"], question_id, data.get("answer", ""))

	if wants_json():
		return jsonify({"ok": True})
	target = data.get("goto") or data.get("q") or 1
	return redirect(url_for("take_test", assessment_id=assessment_id, q=target))


@app.route("/take-test/<assessment_id>/submit", methods=["POST"])
def take_test_submit(assessment_id):
	redir = require_role("student")
	if redir:
		return redir
	user = current_user()
	assessment = _student_assessment(assessment_id)
	attempt = _active_attempt_for(user, assessment_id)
	if not attempt:
		return respond(False, "No test in progress", "index")
	submission = finalize_attempt(user, assessment, attempt)
	if not submission:
		return respond(False, "This test has already been submitted", "index", status=409)
	if wants_json():
		return jsonify({"ok": True, "submission_id": submission["id"]})
	return redirect(url_for("results_summary", submission_id=submission["id"]))


@app.route("/take-test/<assessment_id>/violation", methods=["POST"])
def take_test_violation(assessment_id):
	"""Record anti-cheat violations during a test"""
	redir = require_role_json("student")
	if redir:
		return redir
	user = current_user()
	assessment = _student_assessment(assessment_id)
	attempt = _active_attempt_for(user, assessment_id)
	if not attempt:
		return jsonify({"ok": False, "error": "No test in progress"}), 409

	violation_type = (request.get_json(silent=True) or {}).get("type", "unknown")
	attempt = store.record_violation(attempt["id"], {
		"type": violation_type,
		"timestamp": datetime.now(timezone.utc).isoformat(),
	})
	if not attempt:
		return jsonify({"ok": False, "error": "No test in progress"}), 409
	warning_count = attempt["warnings"]
	logger.info(
		"Test violation recorded",
		extra={"student_id": user["id"], "assessment_id": assessment_id, "violation_type": violation_type, "warning_count": warning_count},
	)

	auto_close = warning_count >= Config.MAX_VIOLATIONS
	response = {
		"ok": True,
		"warning_count": warning_count,
		"auto_close": auto_close,
		"message": f"Warning {warning_count}/{Config.MAX_VIOLATIONS}: {violation_type}",
	}
	if auto_close:
		submission = finalize_attempt(user, assessment, attempt, reason="violations")
		response["redirect"] = _result_url(submission)
	return jsonify(response)


@app.route("/courses")
def courses():
	redir = require_role("student")
	if redir:
		return redir
	grouped = defaultdict(list)
	for material in store.list_materials():
		grouped[material.get("course") or "General"].append(material)
	return render_template("index.html", view="courses", courses=dict(grouped))


def _ai_generate(prompt, history=None, system_role=AI_SYSTEM_ROLE):
	if not openai.api_key:
		return "The AI assistant is not configured right now. Please ask your instructor or try again later."
	messages = [{"role": "system", "content": system_role}]
	messages.extend(history or [])
	messages.append({"role": "user", "content": prompt})
	try:
		response = openai.chat.completions.create(
			model=Config.OPENAI_MODEL,
			messages=messages,
			temperature=0.4,
			max_tokens=800,
			timeout=30
		)
		return response.choices[0].message.content
	except Exception as e:
		logger.error(f"OpenAI API error: {e}")
		if "quota" in str(e).lower() or "429" in str(e):
			return "The AI assistant is busy right now (quota exceeded). Please try again later."
		return "The AI assistant is temporarily unavailable. Please try again later."


@app.route("/ai-assistant", methods=["GET", "POST"])
def ai_assistant():
	redir = require_role("student")
	if redir:
		return redir
	history = session.get("ai_history", [])
	if request.method == "POST":
		prompt = (_form_or_json().get("message") or "").strip()
		if not prompt:
			return respond(False, "Please type a question", "ai_assistant")
		reply = _ai_generate(prompt, history)
		# Cookie session, so only a short tail of the conversation is kept
		history = (history + [
			{"role": "user", "content": prompt[:1000]},
			{"role": "assistant", "content": reply[:1500]},
		])[-AI_HISTORY_LIMIT:]
		session["ai_history"] = history
		if wants_json():
			return jsonify({"ok": True, "reply": reply})
		return redirect(url_for("ai_assistant"))
	return render_template("index.html", view="ai_assistant", history=history)


@app.route("/ai-assistant/clear", methods=["POST"])
def ai_assistant_clear():
	redir = require_role("student")
	if redir:
		return redir
	session.pop("ai_history", None)
	return redirect(url_for("ai_assistant"))


@app.route("/score-calculator", methods=["GET", "POST"])
def score_calculator():
	redir = require_role("student")
	if redir:
		return redir
	result = None
	error = None
	if request.method == "POST":
		if request.is_json:
			components = (request.get_json(silent=True) or {}).get("components", [])
		else:
			components = [
				{"name": n, "score": s, "max": m, "weight": w}
				for n, s, m, w in zip(
					request.form.getlist("name"),
					request.form.getlist("score"),
					request.form.getlist("max"),
					request.form.getlist("weight"),
				)
				if n.strip()
			]
		try:
			result = calculate_weighted_score(components)
		except (TypeError, ValueError) as e:
			error = str(e)
		if wants_json():
			if error:
				return jsonify({"ok": False, "error": error}), 400
			return jsonify(dict(result, ok=True))
	return render_template("index.html", view="score_calculator", result=result, error=error)


# ----------------------------------------------------------------------
# Coding lab
# ----------------------------------------------------------------------

def _filter_questions(questions, difficulty, language):
	return [
		q for q in questions
		if (difficulty in (None, "", "all") or q.get("difficulty") == difficulty)
		and (language in (None, "", "all") or q.get("programming_language") == language)
	]


@app.route("/coding-lab")
def coding_lab():
	redir = require_role("student")
	if redir:
		return redir
	user = current_user()
	difficulty = request.args.get("difficulty", "all")
	language = request.args.get("language", "all")
	questions = _filter_questions(store.list_published_questions(), difficulty, language)
	submissions = store.list_student_submissions(user["id"])
	submitted = {s["question_id"] for s in submissions}
	return render_template("index.html", view="coding_lab", questions=questions, submitted=submitted,
		submissions=submissions, difficulty=difficulty, language=language,
		difficulties=DIFFICULTIES, languages=EDITOR_LANGUAGES)


@app.route("/api/coding-lab/questions")
def api_coding_questions():
	redir = require_role_json("student")
	if redir:
		return redir
	questions = _filter_questions(store.list_published_questions(), request.args.get("difficulty"), request.args.get("language"))
	# Hidden test cases stay on the server
	return jsonify({"ok": True, "questions": [{k: v for k, v in q.items() if k != "test_cases"} for q in questions]})


def _published_question(question_id):
	question = store.get_question(question_id)
	if not question or not question.get("is_published"):
		abort(404)
	return question


@app.route("/coding-lab/<question_id>")
def coding_problem(question_id):
	redir = require_role("student")
	if redir:
		return redir
	question = _published_question(question_id)
	language = request.args.get("language") or question.get("programming_language", "python")
	if language not in CODE_TEMPLATES:
		language = "python"
	code = CODE_TEMPLATES[language] if request.args.get("template") else ""
	return render_template("index.html", view="coding_problem", question=question, language=language,
		code=code, languages=EDITOR_LANGUAGES, templates=CODE_TEMPLATES)


@app.route("/coding-lab/<question_id>/submit", methods=["POST"])
def coding_submit(question_id):
	redir = require_role("student")
	if redir:
		return redir
	user = current_user()
	_published_question(question_id)
	data = _form_or_json()
	code = data.get("code") or ""
	language = data.get("language") or "python"
	if not code.strip():
		return respond(False, "Please write some code first", "coding_problem", question_id=question_id)
	try:
		submission = execute_and_save(store, piston, question_id, user["id"], code, language)
	except CodeExecutionError as e:
		return respond(False, str(e), "coding_problem", question_id=question_id)
	if wants_json():
		return jsonify({"ok": True, "submission": submission})
	return redirect(url_for("submission_view", submission_id=submission["id"]))


@app.route("/coding-lab/<question_id>/run", methods=["POST"])
def coding_run(question_id):
	redir = require_role_json("student")
	if redir:
		return redir
	question = _published_question(question_id)
	data = _form_or_json()
	code = data.get("code") or ""
	if not code.strip():
		return jsonify({"success": False, "error": "No code provided"}), 400
	stdin = data.get("stdin")
	if stdin is None:
		stdin = question.get("sample_input", "")
	try:
		result = piston.run_code(code, data.get("language") or "python", stdin)
	except CodeExecutionError as e:
		return jsonify({"success": False, "error": str(e)}), 502
	return jsonify(result)


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

def _can_view_result(user, submission):
	role = user.get("role")
	if role == "admin":
		return True
	if role == "student":
		return submission.get("student_id") == user["id"]
	return submission.get("faculty_id") == user["id"]


def _visible_test_submission(submission_id):
	redir = require_role()
	if redir:
		return redir, None
	submission = store.get_test_submission(submission_id)
	if not submission or not _can_view_result(current_user(), submission):
		abort(404)
	return None, submission


@app.route("/results/<submission_id>")
def results_page(submission_id):
	redir, submission = _visible_test_submission(submission_id)
	if redir:
		return redir
	student = store.get_user(submission["student_id"]) or {}
	return render_template("index.html", view="results", submission=submission, student=student)


@app.route("/results-summary/<submission_id>")
def results_summary(submission_id):
	redir, submission = _visible_test_submission(submission_id)
	if redir:
		return redir
	return render_template("index.html", view="results_summary", submission=submission)


@app.route("/submission/<submission_id>")
def submission_view(submission_id):
	redir = require_role()
	if redir:
		return redir
	user = current_user()
	submission = store.get_submission(submission_id)
	if not submission:
		abort(404)
	question = store.get_question(submission["question_id"]) or {}
	allowed = (
		user["role"] == "admin"
		or submission.get("student_id") == user["id"]
		or (user["role"] == "faculty" and question.get("faculty_id") == user["id"])
	)
	if not allowed:
		abort(404)
	return render_template("index.html", view="submission", submission=submission, question=question)


# ----------------------------------------------------------------------
# Fallbacks
# ----------------------------------------------------------------------

@app.route("/<path:unknown>")
def catch_all(unknown):
	if unknown.startswith("api/"):
		return jsonify({"ok": False, "error": "Endpoint not found"}), 404
	return redirect(url_for("index"))


@app.after_request
def add_security_headers(resp):
	resp.headers["X-Frame-Options"] = "DENY"
	resp.headers["X-Content-Type-Options"] = "nosniff"
	resp.headers["Referrer-Policy"] = "no-referrer"
	return resp


def _error_response(code, message):
	if request.path.startswith("/api/") or wants_json():
		return jsonify({'ok': False, 'error': message}), code
	return render_template("index.html", view="error", error=message, code=code), code


@app.errorhandler(403)
def forbidden(error):
	return _error_response(403, "Forbidden")


@app.errorhandler(404)
def not_found(error):
	return _error_response(404, "Not found")


@app.errorhandler(405)
def method_not_allowed(error):
	return _error_response(405, "Method not allowed")


@app.errorhandler(500)
def internal_error(error):
	logger.error(f"Internal server error: {error}")
	return _error_response(500, "Internal server error")


if __name__ == "__main__":
	Config.validate_config()
	if store.ping():
		store.ensure_indexes()
		logger.info("MongoDB connected successfully")
	else:
		logger.error("MongoDB is unreachable, pages will fail until it comes back")
	app.run(host=Config.HOST, port=Config.PORT, debug=Config.DEBUG, threaded=True)
