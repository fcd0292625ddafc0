"""
Pytest fixtures for phasegate tests
"""

import pytest
import yaml
from unittest.mock import Mock

from phasegate.assessors.base import Assessor
from phasegate.assessors.static import StaticAssessor
from phasegate.audit import AuditLog
from phasegate.config import PhasegateConfig
from phasegate.factory import EngineFactory
from phasegate.models import AssessorSource, WorkItem
from phasegate.registry import parse_registry
from phasegate.store import InMemoryStore, SQLiteStore


@pytest.fixture
def registry_data():
    """
    Three-phase registry used across the tests

    Phase 1 matches the reference scenarios: two criteria of weight 10,
    pass at 70, escalate at 40.
    """
    return {
        "registry": {
            "name": "test_registry",
            "version": "1.0",
            "description": "Registry for tests",
            "phases": [
                {
                    "ordinal": 1,
                    "name": "Screen",
                    "pass_threshold": 70,
                    "escalate_threshold": 40,
                    "deliverables": ["idea_card"],
                    "criteria": [
                        {"id": "c1", "prompt": "Is there a clear customer?", "weight": 10},
                        {"id": "c2", "prompt": "Will they pay?", "weight": 10},
                    ],
                },
                {
                    "ordinal": 2,
                    "name": "Assess",
                    "pass_threshold": 70,
                    "escalate_threshold": 40,
                    "deliverables": ["assessment_report", "risk_register"],
                    "criteria": [
                        {"id": "c3", "prompt": "Is the market large enough?", "weight": 3},
                    ],
                },
                {
                    "ordinal": 3,
                    "name": "Brief",
                    "pass_threshold": 70,
                    "escalate_threshold": 40,
                    "criteria": [
                        {"id": "c4", "prompt": "Is the plan actionable?", "weight": 2},
                        {"id": "c5", "prompt": "Are the risks mitigated?", "weight": 1},
                    ],
                },
            ],
        }
    }


@pytest.fixture
def registry(registry_data):
    return parse_registry(registry_data)


@pytest.fixture
def registry_file(tmp_path, registry_data):
    path = tmp_path / "test_registry.yaml"
    path.write_text(yaml.dump(registry_data))
    return path


@pytest.fixture
def memory_store():
    return InMemoryStore()


@pytest.fixture
def sqlite_store(tmp_path):
    store = SQLiteStore(tmp_path / "phasegate.db")
    yield store
    store.close()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Every store backend, for tests of the shared contract"""
    if request.param == "memory":
        yield InMemoryStore()
    else:
        s = SQLiteStore(tmp_path / "contract.db")
        yield s
        s.close()


@pytest.fixture
def audit_log(memory_store):
    return AuditLog(memory_store)


@pytest.fixture
def work_item():
    return WorkItem(owner_id="alice", payload={"title": "Solar kiosk"}, registry="test_registry")


@pytest.fixture
def no_sleep():
    """Stand-in for time.sleep so backoff never waits"""
    return Mock()


@pytest.fixture
def mock_assessor():
    """Factory for Mock assessors carrying a real source tag"""

    def _make(side_effect=None, return_value=None, source=AssessorSource.AUTOMATED):
        assessor = Mock(spec=Assessor)
        assessor.source = source
        assessor.name.return_value = "mock"
        if side_effect is not None:
            assessor.assess.side_effect = side_effect
        if return_value is not None:
            assessor.assess.return_value = return_value
        return assessor

    return _make


@pytest.fixture
def make_engine(registry_file, no_sleep):
    """
    Build a fully wired in-memory engine

    Returns:
        Function(assessor=None, retry_budget=2, store=None) -> Engine
    """
    engines = []

    def _make(assessor=None, retry_budget=2, store=None, config=None):
        config = config or PhasegateConfig()
        config.registry.path = str(registry_file)
        config.storage.backend = "memory"
        config.controller.retry_budget = retry_budget
        engine = EngineFactory(config, sleep=no_sleep).create_engine(
            assessor=assessor or StaticAssessor(default_score=80),
            store=store,
            inline_deliverables=True,
        )
        engines.append(engine)
        return engine

    yield _make

    for engine in engines:
        engine.close()
