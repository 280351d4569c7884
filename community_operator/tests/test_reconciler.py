from __future__ import annotations

import logging
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from community_operator.src.config import ImageConfig, OperatorConfig
from community_operator.src.controller import Controller, Request, Result
from community_operator.src.reconciler import MongoDBCommunityReconciler, new_reconciler
from community_operator.src.scheme import MONGODB_COMMUNITY

IMAGES = ImageConfig(
    agent="agent:1",
    version_upgrade_hook="hook:1",
    readiness_probe="probe:1",
)


def test_reconcile_reports_observed_resource(caplog: pytest.LogCaptureFixture) -> None:
    cache = MagicMock()
    cache.get.return_value = {
        "metadata": {"name": "db", "namespace": "mongodb"},
        "spec": {"members": 3, "version": "6.0.5"},
    }
    reconciler = MongoDBCommunityReconciler(cache=cache, images=IMAGES)

    with caplog.at_level(logging.INFO, logger="community_operator.src.reconciler"):
        result = reconciler.reconcile(Request("mongodb", "db"))

    assert result == Result()
    cache.get.assert_called_once_with(MONGODB_COMMUNITY, "mongodb", "db")
    assert "members=3 version=6.0.5 agentImage=agent:1" in caplog.text


def test_reconcile_treats_missing_resource_as_deleted(caplog: pytest.LogCaptureFixture) -> None:
    cache = MagicMock()
    cache.get.return_value = None
    reconciler = MongoDBCommunityReconciler(cache=cache, images=IMAGES)

    with caplog.at_level(logging.INFO, logger="community_operator.src.reconciler"):
        result = reconciler.reconcile(Request("mongodb", "gone"))

    assert result == Result()
    assert "assuming it was deleted" in caplog.text


def test_setup_with_manager_registers_controller() -> None:
    manager = MagicMock()
    reconciler = MongoDBCommunityReconciler(
        cache=manager.cache, images=IMAGES, max_concurrent_reconciles=3
    )

    reconciler.setup_with_manager(manager)

    manager.add.assert_called_once()
    controller = manager.add.call_args.args[0]
    assert isinstance(controller, Controller)
    assert controller.resource_type == MONGODB_COMMUNITY
    assert controller.max_concurrent_reconciles == 3
    assert controller.reconciler is reconciler
    manager.cache.add_event_handler.assert_called_once_with(
        MONGODB_COMMUNITY, controller._enqueue
    )


def test_new_reconciler_binds_manager_cache_and_config() -> None:
    manager = SimpleNamespace(cache=MagicMock())
    config = OperatorConfig(
        images=IMAGES,
        watch_namespace="mongodb",
        label_selector=None,
        max_concurrent_reconciles=2,
    )

    reconciler = new_reconciler(manager, config)  # type: ignore[arg-type]

    assert reconciler.cache is manager.cache
    assert reconciler.images is IMAGES
    assert reconciler.max_concurrent_reconciles == 2
