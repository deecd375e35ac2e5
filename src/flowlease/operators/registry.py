"""Operator registry: type tag to factory."""

from __future__ import annotations

from flowlease.errors import ConfigError
from flowlease.operators.base import Operator, OperatorFactory, TaskRequest


class OperatorRegistry:
    """Maps operator type tags (``sql``, ``sql_load``) to factories."""

    def __init__(self) -> None:
        self._factories: dict[str, OperatorFactory] = {}

    def register(self, operator_type: str, factory: OperatorFactory) -> None:
        if not operator_type:
            raise ValueError("Operator type tag must be non-empty.")
        if operator_type in self._factories:
            raise ValueError(f"Operator type already registered: {operator_type}")
        self._factories[operator_type] = factory

    def types(self) -> tuple[str, ...]:
        return tuple(sorted(self._factories))

    def new_operator(self, request: TaskRequest) -> Operator:
        """Create a fresh operator instance for one invocation."""

        factory = self._factories.get(request.operator_type)
        if factory is None:
            raise ConfigError(
                f"Unknown operator type {request.operator_type!r}; "
                f"registered: {', '.join(self.types()) or '<none>'}",
            )
        return factory(request)


def default_registry() -> OperatorRegistry:
    """Registry with the built-in SQL operators."""

    from flowlease.operators.sql import SqlOperator
    from flowlease.operators.sql_load import SqlLoadOperator

    registry = OperatorRegistry()
    registry.register(SqlOperator.OPERATOR_TYPE, SqlOperator)
    registry.register(SqlLoadOperator.OPERATOR_TYPE, SqlLoadOperator)
    return registry
