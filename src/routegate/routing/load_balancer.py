"""
Load Balancer

Selection policies for distributing attempts across the instances of a
logical service.
"""

from __future__ import annotations

import itertools
import random
from abc import ABC, abstractmethod
from enum import Enum
from typing import Sequence

import structlog

from routegate.exceptions import NoInstancesAvailableError

from .discovery import InstanceSet, ServiceInstance

logger = structlog.get_logger()


class LoadBalancingAlgorithm(str, Enum):
    """Load balancing algorithm types."""

    ROUND_ROBIN = "round_robin"
    RANDOM = "random"


class LoadBalancingStrategy(ABC):
    """Base class for load balancing strategies."""

    @abstractmethod
    def select(
        self, service_name: str, instances: Sequence[ServiceInstance]
    ) -> ServiceInstance:
        """
        Select a service instance based on the strategy.

        Args:
            service_name: Logical service the instances belong to
            instances: Non-empty sequence of candidate instances

        Returns:
            Selected service instance
        """


class RoundRobinStrategy(LoadBalancingStrategy):
    """Round robin over the instance list, one cursor per service."""

    def __init__(self) -> None:
        """Initialize round robin strategy."""
        self._cursors: dict[str, itertools.count[int]] = {}

    def select(
        self, service_name: str, instances: Sequence[ServiceInstance]
    ) -> ServiceInstance:
        """
        Select next instance in round robin order.

        Args:
            service_name: Logical service name keying the cursor
            instances: Non-empty sequence of candidate instances

        Returns:
            Next service instance in rotation
        """
        cursor = self._cursors.setdefault(service_name, itertools.count())
        # next() on itertools.count is atomic, no two callers see the same value
        return instances[next(cursor) % len(instances)]


class RandomStrategy(LoadBalancingStrategy):
    """Random load balancing strategy."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def select(
        self, service_name: str, instances: Sequence[ServiceInstance]
    ) -> ServiceInstance:
        """
        Select random instance.

        Args:
            service_name: Not used for random selection
            instances: Non-empty sequence of candidate instances

        Returns:
            Randomly selected service instance
        """
        return self._rng.choice(instances)


class LoadBalancer:
    """
    Load balancer for distributing attempts across service instances.

    Delegates the choice to a pluggable strategy; only the strategy knows
    how an instance is picked.
    """

    def __init__(
        self,
        algorithm: LoadBalancingAlgorithm = LoadBalancingAlgorithm.ROUND_ROBIN,
        strategy: LoadBalancingStrategy | None = None,
    ):
        """
        Initialize load balancer.

        Args:
            algorithm: Load balancing algorithm to use
            strategy: Explicit strategy instance, overriding ``algorithm``
        """
        self.algorithm = algorithm
        self._strategy = strategy or self._create_strategy(algorithm)

    def _create_strategy(
        self, algorithm: LoadBalancingAlgorithm
    ) -> LoadBalancingStrategy:
        """
        Create strategy instance based on algorithm.

        Args:
            algorithm: Load balancing algorithm

        Returns:
            Strategy instance
        """
        strategies: dict[LoadBalancingAlgorithm, type[LoadBalancingStrategy]] = {
            LoadBalancingAlgorithm.ROUND_ROBIN: RoundRobinStrategy,
            LoadBalancingAlgorithm.RANDOM: RandomStrategy,
        }

        return strategies[algorithm]()

    def select(self, instances: InstanceSet) -> ServiceInstance:
        """
        Select a backend instance for one attempt.

        Args:
            instances: Instance set of the target service

        Returns:
            Selected service instance

        Raises:
            NoInstancesAvailableError: If the instance set is empty
        """
        if not instances:
            logger.warning(
                "No healthy instances available",
                service=instances.service_name,
                algorithm=self.algorithm,
            )
            raise NoInstancesAvailableError(instances.service_name)

        instance = self._strategy.select(instances.service_name, instances.instances)

        logger.debug(
            "Instance selected",
            service=instances.service_name,
            instance_id=instance.instance_id,
            algorithm=self.algorithm,
        )
        return instance
