import os
from types import SimpleNamespace
import pytest
from cryptography.fernet import Fernet
from werkzeug.security import generate_password_hash

from school_app import create_app, db, cache
from school_app.models import Campus, User
from school_app.auth.services import issue_tokens
from school_app.features.services import initialize_campus_features

PASSWORD = "password123"


@pytest.fixture(scope="session")
def temp_db_path(tmp_path_factory):
    path = tmp_path_factory.mktemp("db") / "test.db"
    uri_path = str(path).replace("\\", "/")
    os.environ["DATABASE_URL"] = f"sqlite:///{uri_path}"
    return path


@pytest.fixture(scope="session")
def app(temp_db_path, tmp_path_factory):
    app = create_app({
        "TESTING": True,
        "RATELIMIT_ENABLED": False,
        "MAIL_HOST": None,
        "APP_ENV": "testing",
        "BACKUP_DIR": str(tmp_path_factory.mktemp("backups")),
        "PAYMENT_ENCRYPTION_KEY": Fernet.generate_key().decode(),
    })
    return app


@pytest.fixture(autouse=True)
def clean_state(app):
    from school_app.payments.security_monitor import security_monitor
    with app.app_context():
        db.drop_all()
        db.create_all()
        cache.clear()
    security_monitor._security.clear()
    security_monitor._audit.clear()
    yield
    with app.app_context():
        db.session.remove()


@pytest.fixture()
def client(app):
    return app.test_client()


def _user(campus_id, email, user_type, first_name, **extra):
    return User(campus_id_fk=campus_id, email=email, password_hash=generate_password_hash(PASSWORD),
                first_name=first_name, last_name="Test", user_type=user_type, **extra)


@pytest.fixture()
def seed(app):
    """Two campuses with one account of every user type on the first."""
    with app.app_context():
        campus = Campus(name="Green Valley School", code="GVS", contact_email="office@gvs.test")
        other = Campus(name="Hill Top School", code="HTS")
        db.session.add_all([campus, other])
        db.session.flush()

        users = {
            "super": _user(None, "root@platform.test", "Super Admin", "Root"),
            "admin": _user(campus.campus_id, "admin@gvs.test", "Admin", "Asha"),
            "teacher": _user(campus.campus_id, "teacher@gvs.test", "Teacher", "Tariq"),
            "teacher2": _user(campus.campus_id, "teacher2@gvs.test", "Teacher", "Tess"),
            "student": _user(campus.campus_id, "student@gvs.test", "Student", "Sam"),
            "student2": _user(campus.campus_id, "student2@gvs.test", "Student", "Sid"),
            "other_admin": _user(other.campus_id, "admin@hts.test", "Admin", "Omar"),
            "other_student": _user(other.campus_id, "student@hts.test", "Student", "Olga"),
        }
        db.session.add_all(users.values())
        db.session.flush()
        users["parent"] = _user(campus.campus_id, "parent@gvs.test", "Parent", "Priya",
                                parent_of_id_fk=users["student"].user_id)
        db.session.add(users["parent"])
        db.session.commit()
        initialize_campus_features(campus.campus_id)
        initialize_campus_features(other.campus_id)

        return SimpleNamespace(
            campus_id=campus.campus_id,
            other_campus_id=other.campus_id,
            users={name: u.user_id for name, u in users.items()},
        )


@pytest.fixture()
def auth(app, seed):
    """auth("admin") -> Authorization header for that seeded user."""
    def headers(name):
        with app.app_context():
            user = db.session.get(User, seed.users[name])
            tokens = issue_tokens(user)
        return {"Authorization": f"Bearer {tokens['access_token']}"}
    return headers


@pytest.fixture()
def school_class(app, seed):
    """Grade 5A taught by `teacher` with `student` and `student2` enrolled."""
    from school_app.classes import services as classes
    with app.app_context():
        cls = classes.create_class(seed.campus_id, {
            "name": "Grade 5A", "academic_year": "2025-26", "class_teacher_id": seed.users["teacher"],
        })
        classes.assign_students(seed.campus_id, cls.class_id, [seed.users["student"], seed.users["student2"]])
        return cls.class_id
