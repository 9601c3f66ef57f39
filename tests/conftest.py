# tests/conftest.py
from __future__ import annotations

from collections.abc import Callable, Generator, Iterator
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from syncqueue.api.v1.dependencies import get_sync_config
from syncqueue.core.settings import MODE_HUB, MODE_LEAF, SyncConfig
from syncqueue.db.session import Base, enable_sqlite_savepoints
from syncqueue.db.session import get_db as app_get_session
from syncqueue.main import app as fastapi_app
from syncqueue.models import Course, Enrolment, Grade, GradeItem, User
from syncqueue.services.node_registry import NodeRegistry

TEST_DB_URL = "sqlite://"
START_TIME = 1_700_000_000
LEAF_NODE_ID = "leaf-a"
REGISTRATION_SECRET = "provision-me"


class FakeClock:
    """Deterministic epoch clock injected into services."""

    def __init__(self, start: int = START_TIME) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now


def _build_engine() -> Engine:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    engine = _build_engine()
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    """Session on the hub (or the only) database of a test."""
    session = sessionmaker(bind=engine, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def leaf_session() -> Iterator[Session]:
    """Session on a second, independent database playing the leaf."""
    engine = _build_engine()
    session = sessionmaker(bind=engine, autoflush=False)()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def make_config(tmp_path: Path) -> Callable[..., SyncConfig]:
    base = SyncConfig(
        enabled=True,
        mode=MODE_LEAF,
        node_id=LEAF_NODE_ID,
        hub_url="http://testserver",
        api_key=None,
        timeout_seconds=5.0,
        connect_timeout_seconds=2.0,
        batch_size=100,
        max_retries=5,
        duplicate_window_seconds=3600,
        processing_timeout_seconds=900,
        download_limit=100,
        download_overlap_seconds=1,
        queue_retention_days=30,
        log_retention_days=90,
        update_retention_days=30,
        allow_registration=True,
        registration_secret=REGISTRATION_SECRET,
        artifact_dir=str(tmp_path / "artifacts"),
        overdue_threshold_seconds=86_400,
    )

    def _make(**overrides: Any) -> SyncConfig:
        return replace(base, **overrides)

    return _make


@pytest.fixture()
def leaf_config(make_config: Callable[..., SyncConfig]) -> SyncConfig:
    return make_config()


@pytest.fixture()
def hub_config(make_config: Callable[..., SyncConfig]) -> SyncConfig:
    return make_config(mode=MODE_HUB, node_id="hub")


@pytest.fixture()
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def override_dependencies(
    app: FastAPI, db_session: Session, hub_config: SyncConfig
) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[app_get_session] = _get_session_override
    app.dependency_overrides[get_sync_config] = lambda: hub_config
    try:
        yield
    finally:
        app.dependency_overrides.pop(app_get_session, None)
        app.dependency_overrides.pop(get_sync_config, None)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def registered_node(db_session: Session, hub_config: SyncConfig) -> tuple[str, str]:
    """Register the test leaf on the hub and return (node_id, api_key)."""
    _, api_key = NodeRegistry(db_session, hub_config).register(LEAF_NODE_ID, "Leaf A")
    return LEAF_NODE_ID, api_key


class LmsFactory:
    """Creates platform rows on whichever database a test passes in."""

    @staticmethod
    def user(db: Session, username: str, **fields: Any) -> User:
        fields.setdefault("email", f"{username}@example.org")
        fields.setdefault("firstname", username.title())
        fields.setdefault("lastname", "Tester")
        user = User(username=username, **fields)
        db.add(user)
        db.commit()
        return user

    @staticmethod
    def course(db: Session, shortname: str, **fields: Any) -> Course:
        fields.setdefault("fullname", f"Course {shortname}")
        course = Course(shortname=shortname, **fields)
        db.add(course)
        db.commit()
        return course

    @staticmethod
    def grade_item(db: Session, course: Course, **fields: Any) -> GradeItem:
        fields.setdefault("itemname", "Assignment 1")
        item = GradeItem(course_id=course.id, **fields)
        db.add(item)
        db.commit()
        return item

    @staticmethod
    def grade(db: Session, item: GradeItem, user: User, **fields: Any) -> Grade:
        grade = Grade(item_id=item.id, user_id=user.id, **fields)
        db.add(grade)
        db.commit()
        return grade

    @staticmethod
    def enrolment(db: Session, user: User, course: Course, **fields: Any) -> Enrolment:
        enrolment = Enrolment(user_id=user.id, course_id=course.id, **fields)
        db.add(enrolment)
        db.commit()
        return enrolment


@pytest.fixture()
def lms() -> type[LmsFactory]:
    return LmsFactory
