from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from community_operator.src.cache import ObjectCache
from community_operator.src.config import ImageConfig, OperatorConfig
from community_operator.src.controller import Controller, Request, Result
from community_operator.src.scheme import MONGODB_COMMUNITY

if TYPE_CHECKING:
    from community_operator.src.manager import Manager

CONTROLLER_NAME = "mongodbcommunity"


class MongoDBCommunityReconciler:
    """Entry point of the ``MongoDBCommunity`` reconciliation.

    Building StatefulSets and automation configs is not part of this
    repository. This reconciler resolves each request against the cache and
    reports the observed resource together with the images it would deploy.
    """

    def __init__(
        self,
        cache: ObjectCache,
        images: ImageConfig,
        max_concurrent_reconciles: int = 1,
        logger: logging.Logger | None = None,
    ) -> None:
        self.cache = cache
        self.images = images
        self.max_concurrent_reconciles = max_concurrent_reconciles
        self.logger = logger or logging.getLogger(__name__)

    def reconcile(self, request: Request) -> Result:
        resource = self.cache.get(MONGODB_COMMUNITY, request.namespace, request.name)
        if resource is None:
            self.logger.info("MongoDBCommunity %s not found, assuming it was deleted", request)
            return Result()

        spec = resource.get("spec") or {}
        self.logger.info(
            "Reconciling MongoDBCommunity %s: members=%s version=%s agentImage=%s "
            "versionUpgradeHookImage=%s readinessProbeImage=%s",
            request,
            spec.get("members"),
            spec.get("version"),
            self.images.agent,
            self.images.version_upgrade_hook,
            self.images.readiness_probe,
        )
        return Result()

    def setup_with_manager(self, manager: Manager) -> None:
        """Register a controller for ``MongoDBCommunity`` with *manager*."""
        controller = Controller(
            name=CONTROLLER_NAME,
            reconciler=self,
            cache=manager.cache,
            resource_type=MONGODB_COMMUNITY,
            max_concurrent_reconciles=self.max_concurrent_reconciles,
        )
        manager.add(controller, name=f"{CONTROLLER_NAME}-controller")


def new_reconciler(manager: Manager, config: OperatorConfig) -> MongoDBCommunityReconciler:
    return MongoDBCommunityReconciler(
        cache=manager.cache,
        images=config.images,
        max_concurrent_reconciles=config.max_concurrent_reconciles,
    )
