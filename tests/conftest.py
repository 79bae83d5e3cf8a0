import copy
import os as _os
import sys

import pytest

# Ensure project root is importable (so `import csr` / `main.py` work without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from csr import db  # noqa: E402
from csr.models import ChildResource, CustomResource, CustomServiceSpec, ObjectMeta  # noqa: E402
from csr.reconciler import FINALIZER_NAME  # noqa: E402
from csr.settings import Settings  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Point every test at its own sqlite file."""
    test_settings = Settings(db_path=str(tmp_path / "csr-test.db"), enable_resync=False)
    monkeypatch.setattr(db, "settings", test_settings)
    db.init_db()
    return test_settings


class RecordingGateway:
    """In-memory gateway that records every call; `fail_on` makes a call raise."""

    def __init__(self, fail_on=None, delete_result=None):
        self.children = {}
        self.calls = []
        self.fail_on = set(fail_on or ())
        self.delete_result = delete_result
        self._version = 0

    def _maybe_fail(self, op):
        self.calls.append(op)
        if op in self.fail_on:
            raise ConnectionError(f"backend unavailable during {op}")

    def get(self, namespace, name):
        self._maybe_fail("get")
        child = self.children.get((namespace, name))
        return copy.deepcopy(child)

    def create_or_replace(self, child):
        self._maybe_fail("create_or_replace")
        self._version += 1
        stored = copy.deepcopy(child)
        stored.metadata.resource_version = str(self._version)
        self.children[(child.metadata.namespace, child.metadata.name)] = stored
        return copy.deepcopy(stored)

    def delete(self, namespace, name):
        self._maybe_fail("delete")
        if self.delete_result is not None:
            return self.delete_result
        return self.children.pop((namespace, name), None) is not None

    @property
    def writes(self):
        return [c for c in self.calls if c != "get"]


@pytest.fixture
def gateway():
    return RecordingGateway()


def make_resource(name="svc1", namespace="default", child_name="cm1", key="k", value="v1", finalizers=None):
    return CustomResource(
        metadata=ObjectMeta(
            name=name,
            namespace=namespace,
            finalizers=[FINALIZER_NAME] if finalizers is None else list(finalizers),
        ),
        spec=CustomServiceSpec(child_name=child_name, key=key, value=value),
    )


def make_child(name="cm1", namespace="default", data=None, labels=None):
    return ChildResource(
        metadata=ObjectMeta(name=name, namespace=namespace, labels=dict(labels or {})),
        data=dict(data or {}),
    )
