import itertools

import pytest

from app import create_app
from extensions import db
from models import User
from utils import membership_service
from utils.locations import LocationHierarchy
from utils.roles import PostsCatalogue

PASSWORD = "Str0ng!Pass"

TEST_LOCATIONS = {
    "Bihar": {
        "Tirhut": {
            "Muzaffarpur": ["Kanti", "Motipur", "Bhagwanpur"],
            "Sitamarhi": ["Dumra", "Riga"],
        },
        "Patna": {
            "Patna": ["Danapur", "Phulwari"],
        },
        "Purnia": {
            "Katihar": ["Barsoi", "Kadwa"],
        },
        "Munger": {
            "Munger": ["Dharhara", "Tarapur"],
            "Begusarai": ["Bariyarpur", "Teghra", "Bhagwanpur"],
        },
    },
    "Jharkhand": {
        "Santhal Pargana": {
            "Dumka": ["Jama", "Shikaripara"],
        },
    },
}

TEST_POSTS = {
    "categories": {
        "karyakarini": {
            "name": "Karyakarini",
            "roles": [
                {"code": "adhyaksh", "name": "Adhyaksh"},
                {"code": "sachiv", "name": "Sachiv"},
            ],
        },
        "salahkar": {
            "name": "Salahkar Samiti",
            "roles": [{"code": "salahkar", "name": "Salahkar"}],
        },
    }
}


@pytest.fixture
def hierarchy():
    return LocationHierarchy.from_dict(TEST_LOCATIONS)


@pytest.fixture
def app(tmp_path, monkeypatch, hierarchy):
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("PDF_OUTPUT_DIR", str(tmp_path / "pdfs"))
    app = create_app("testing", locations=hierarchy, catalogue=PostsCatalogue(data=TEST_POSTS))
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    counter = itertools.count(1)

    def _make(role, level=None, entity=None, password_changed=True, active=True):
        user = User(
            name=f"{role} {entity or 'HQ'}",
            email=f"user{next(counter)}@rmas-bihar.org",
            role=role,
            assigned_level=level,
            assigned_id=entity,
            active=active,
            password_changed=password_changed,
        )
        user.set_password(PASSWORD)
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture
def superadmin(make_user):
    return make_user("superadmin")


@pytest.fixture
def make_application(app):
    def _make(district="Muzaffarpur", block=None, email=None, full_name="Ravi Kumar"):
        return membership_service.submit_application(
            {
                "full_name": full_name,
                "mobile": "9876543210",
                "email": email,
                "district": district,
                "block": block,
                "reason": "I want to work for human rights in my area.",
            }
        )

    return _make


@pytest.fixture
def accepted_member(superadmin, make_application):
    application = make_application(district="Katihar", email="member@example.org", full_name="Sunita Devi")
    return membership_service.accept(superadmin, application.id, note="Welcome")


def login(client, user, password=PASSWORD):
    return client.post("/login", json={"email": user.email, "password": password})
