import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from contratrack.permissions import Role, can


def test_admin_can_everything():
    assert can(Role.ADMIN, "anything")
    assert can(Role.ADMIN, "void_contravention")


def test_basic_permissions():
    assert can(Role.USER, "log_contravention")
    assert not can(Role.USER, "health")
    assert not can(Role.USER, "be_approver")
    assert can(Role.APPROVER, "review_approval")
    assert not can(Role.APPROVER, "mark_complete")
    assert not can(Role.APPROVER, "delete_contravention")
