"""
Chat policy: only student → student is forbidden.
"""
from __future__ import annotations

import pytest

from backend.identity_access.domain import Identity
from backend.messaging import policy


ROLES = ("student", "teacher", "admin")


@pytest.mark.parametrize("sender", ROLES)
@pytest.mark.parametrize("receiver", ROLES)
def test_is_allowed_matrix(sender: str, receiver: str):
    expected = not (sender == "student" and receiver == "student")
    assert policy.is_allowed(sender, receiver) is expected


def test_is_allowed_ignores_case_and_whitespace():
    assert policy.is_allowed(" Student", "STUDENT ") is False
    assert policy.is_allowed("Teacher", "student") is True


def test_filter_contacts_hides_students_from_students():
    candidates = [
        Identity(id="1", name="Ada", role="student"),
        Identity(id="2", name="Mr. Brown", role="teacher"),
        Identity(id="3", name="Root", role="admin"),
    ]
    assert [c.id for c in policy.filter_contacts("student", candidates)] == ["2", "3"]
    assert [c.id for c in policy.filter_contacts("teacher", candidates)] == ["1", "2", "3"]
    assert [c.id for c in policy.filter_contacts("admin", candidates)] == ["1", "2", "3"]
