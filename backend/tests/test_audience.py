# tests/test_audience.py - Target resolution

import uuid

import pytest

from app.notifications.audience import (
    AudienceResolver,
    parse_target,
    target_for_announcement,
    target_for_post,
)
from app.notifications.exceptions import ResolutionFailure, UserNotFound
from app.notifications.models import Student, Teacher, UserRole
from app.notifications.schemas import TargetSpec
from app.notifications.stores import SqlUserStore
from conftest import InMemoryUserStore, expo_token


def with_token(user, name, device="d1"):
    user.replace_endpoint_token(expo_token(name), device)
    return user


@pytest.fixture
def school(make_teacher, make_student):
    """Two teachers and six students; one student is unverified and one inactive"""
    return {
        "t1": with_token(make_teacher(name="T1"), "t1"),
        "t2": make_teacher(name="T2"),
        "s1": with_token(make_student(name="S1", class_name="5", section="A"), "s1"),
        "s2": with_token(make_student(name="S2", class_name="5", section="A"), "s2"),
        "s3": with_token(make_student(name="S3", class_name="5", section="A"), "s3"),
        "s4": with_token(make_student(name="S4", class_name="5", section="A", is_verified=False), "s4"),
        "s5": with_token(make_student(name="S5", class_name="5", section="B"), "s5"),
        "s6": with_token(make_student(name="S6", class_name="6", section="A", is_active=False), "s6"),
    }


@pytest.fixture
def resolver(school):
    return AudienceResolver(InMemoryUserStore(school.values()))


@pytest.mark.asyncio
async def test_class_and_section_scope(resolver, school):
    """Only verified, active students of class 5 section A"""
    audience = await resolver.resolve(TargetSpec.for_class("5", section="A"))

    assert {r.user_id for r in audience.recipients} == {str(school[k].id) for k in ("s1", "s2", "s3")}
    assert sorted(audience.tokens) == sorted(expo_token(k) for k in ("s1", "s2", "s3"))
    assert all(r.role == UserRole.STUDENT for r in audience.recipients)


@pytest.mark.asyncio
async def test_class_without_section_covers_all_sections(resolver, school):
    audience = await resolver.resolve({"kind": "class", "className": "5"})

    assert {r.user_id for r in audience.recipients} == {str(school[k].id) for k in ("s1", "s2", "s3", "s5")}


@pytest.mark.asyncio
async def test_everyone_means_eligible_teachers_and_students(resolver, school):
    audience = await resolver.resolve(TargetSpec.everyone())

    assert {r.user_id for r in audience.recipients} == {
        str(school[k].id) for k in ("t1", "t2", "s1", "s2", "s3", "s5")
    }
    # t2 has no devices: a recipient without tokens
    assert len(audience.tokens) == 5


@pytest.mark.asyncio
async def test_role_targets(resolver, school):
    teachers = await resolver.resolve(TargetSpec.teachers())
    students = await resolver.resolve({"kind": "students"})

    assert {r.user_id for r in teachers.recipients} == {str(school["t1"].id), str(school["t2"].id)}
    assert teachers.tokens == [expo_token("t1")]
    assert len(students.recipients) == 4


@pytest.mark.asyncio
async def test_single_user_ignores_eligibility(resolver, school):
    """A directly addressed user is resolved even when unverified"""
    audience = await resolver.resolve(TargetSpec.single_user(school["s4"].id, UserRole.STUDENT))

    assert [r.user_id for r in audience.recipients] == [str(school["s4"].id)]
    assert audience.tokens == [expo_token("s4")]


@pytest.mark.asyncio
async def test_single_user_not_found(resolver):
    with pytest.raises(UserNotFound):
        await resolver.resolve({"kind": "user", "userId": str(uuid.uuid4()), "role": "teacher"})


@pytest.mark.asyncio
async def test_shared_token_is_sent_once(make_teacher):
    """Two accounts signed in on the same device produce one token"""
    a = with_token(make_teacher(), "shared")
    b = with_token(make_teacher(), "shared")
    resolver = AudienceResolver(InMemoryUserStore([a, b]))

    audience = await resolver.resolve(TargetSpec.teachers())

    assert len(audience.recipients) == 2
    assert audience.tokens == [expo_token("shared")]


@pytest.mark.asyncio
async def test_no_match_is_empty_not_an_error(resolver):
    audience = await resolver.resolve(TargetSpec.for_class("12"))

    assert audience.is_empty
    assert audience.tokens == []


@pytest.mark.asyncio
async def test_resolve_tokens(resolver):
    assert await resolver.resolve_tokens(TargetSpec.teachers()) == [expo_token("t1")]


@pytest.mark.parametrize("raw", [
    {"kind": "class"},
    {"kind": "class", "className": "   "},
    {"kind": "user", "userId": "abc"},
    {"kind": "user", "role": "teacher"},
    {"kind": "parents"},
    {},
    "all",
    None,
])
def test_malformed_targets(raw):
    with pytest.raises(ResolutionFailure):
        parse_target(raw)


def test_user_target_accepts_uuid():
    user_id = uuid.uuid4()
    target = parse_target({"kind": "user", "userId": user_id, "role": "student"})

    assert target.user_id == str(user_id)
    assert target.role == UserRole.STUDENT


@pytest.mark.parametrize("target_type, kind", [
    ("all", "all"),
    ("teachers", "teachers"),
    ("students", "students"),
])
def test_announcement_targets(target_type, kind):
    assert target_for_announcement(target_type).kind == kind


def test_announcement_class_target():
    target = target_for_announcement("class", "5", "A")

    assert (target.kind, target.class_name, target.section) == ("class", "5", "A")


def test_announcement_class_target_needs_class():
    with pytest.raises(ResolutionFailure):
        target_for_announcement("class")


def test_question_announcements_are_not_delivered():
    with pytest.raises(ResolutionFailure):
        target_for_announcement("question")


@pytest.mark.parametrize("recipients, kind", [
    ("both", "all"),
    ("teachers", "teachers"),
    ("students", "students"),
])
def test_post_targets(recipients, kind):
    assert target_for_post(recipients).kind == kind


def test_post_class_target():
    assert target_for_post("class", "7").class_name == "7"


def test_unknown_post_recipients():
    with pytest.raises(ResolutionFailure):
        target_for_post("parents")


@pytest.mark.asyncio
async def test_resolution_against_database(add_user, session_factory):
    """Same scoping rules through the SQL user store"""
    kept = add_user(Student, class_name="5", section="A", push_tokens=[])
    add_user(Student, class_name="5", section="A", is_verified=False)
    add_user(Student, class_name="5", section="B")
    add_user(Teacher)
    resolver = AudienceResolver(SqlUserStore(session_factory))

    audience = await resolver.resolve(TargetSpec.for_class("5", "A"))

    assert [r.user_id for r in audience.recipients] == [str(kept.id)]
