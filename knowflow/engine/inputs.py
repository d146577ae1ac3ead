from typing import Any, Awaitable, Callable, Dict, List, Optional

from knowflow.engine.context import StepExecutionContext
from knowflow.engine.graph import WorkflowGraph
from knowflow.schemas.workflow import InputFilter, InputSource, InputSourceType, WorkflowNode

# External data connector: async fn(params, context) -> payload
Connector = Callable[[Dict[str, Any], StepExecutionContext], Awaitable[Any]]

_MISSING = object()


def as_list(data: Any) -> List[Any]:
    if data is None:
        return []
    if isinstance(data, list):
        return data
    return [data]


def _lookup(item: Any, field: str) -> Any:
    value = item
    for part in field.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


def _matches(item: Any, flt: InputFilter) -> bool:
    value = _lookup(item, flt.field)
    if flt.operator == "exists":
        return value is not _MISSING and value is not None
    if value is _MISSING:
        return False
    if flt.operator == "equals":
        return value == flt.value
    if flt.operator == "notEquals":
        return value != flt.value
    if flt.operator == "contains":
        if isinstance(value, (list, tuple, set)):
            return flt.value in value
        return str(flt.value) in str(value)
    if flt.operator == "in":
        return value in (flt.value or [])
    try:
        if flt.operator == "greaterThan":
            return float(value) > float(flt.value)
        if flt.operator == "lessThan":
            return float(value) < float(flt.value)
    except (TypeError, ValueError):
        return False
    return False


def apply_filters(data: Any, filters: List[InputFilter]) -> List[Any]:
    return [item for item in as_list(data) if all(_matches(item, f) for f in filters)]


class InputResolver:
    """
    Works out what a node receives from its input sources. Without explicit
    sources a node gets its predecessors' outputs (unchanged for a single
    predecessor, concatenated in edge order otherwise) and root nodes get
    the workflow input.
    """

    def __init__(
        self,
        graph: WorkflowGraph,
        outputs: Dict[str, Any],
        initial_input: Any = None,
        connectors: Optional[Dict[str, Connector]] = None,
    ):
        self.graph = graph
        self.outputs = outputs
        self.initial_input = initial_input
        self.connectors = connectors or {}

    async def resolve(self, node: WorkflowNode, context: StepExecutionContext) -> Any:
        if not node.input_sources:
            return self.default_input(node.id)

        parts = []
        for source in node.input_sources:
            data = await self._resolve_source(source, context)
            if source.filters:
                data = apply_filters(data, source.filters)
            parts.append(data)

        if len(parts) == 1:
            return parts[0]
        merged: List[Any] = []
        for part in parts:
            merged.extend(as_list(part))
        return merged

    async def _resolve_source(self, source: InputSource, context: StepExecutionContext) -> Any:
        if source.type == InputSourceType.PREVIOUS_NODE:
            return self.output_of(source.node_id)
        if source.type == InputSourceType.STATIC:
            return source.data
        connector = self.connectors.get(source.connector)
        if connector is None:
            raise LookupError(f"Unknown data connector: {source.connector}")
        return await connector(source.params, context)

    def output_of(self, node_id: str) -> Any:
        node = self.graph.get_node(node_id)
        if node is not None and not node.enabled:
            # Disabled nodes hand their own input straight through
            return self.default_input(node_id)
        # Failed nodes under the continue policy are stored as []
        return self.outputs.get(node_id, [])

    def default_input(self, node_id: str) -> Any:
        predecessors = self.graph.get_predecessors(node_id)
        if not predecessors:
            return self.initial_input
        if len(predecessors) == 1:
            return self.output_of(predecessors[0])
        merged: List[Any] = []
        for predecessor in predecessors:
            merged.extend(as_list(self.output_of(predecessor)))
        return merged


# Connectors available to every executor; populated by `register_connector`
data_connectors: Dict[str, Connector] = {}


def register_connector(name: str):
    """Decorator to register an external data connector under `name`."""
    def decorator(fn: Connector) -> Connector:
        data_connectors[name] = fn
        return fn
    return decorator
