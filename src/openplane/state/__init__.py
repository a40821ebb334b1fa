from openplane.state.documents import JsonDocumentStore, StateStoreError
from openplane.state.stores import (
    ConnectorRegistry,
    ModelSelectionStore,
    PlanStore,
    RunStateStore,
    StateStores,
    WorkspacePolicyStore,
)

__all__ = [
    "ConnectorRegistry",
    "JsonDocumentStore",
    "ModelSelectionStore",
    "PlanStore",
    "RunStateStore",
    "StateStoreError",
    "StateStores",
    "WorkspacePolicyStore",
]
