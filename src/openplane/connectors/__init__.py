from openplane.connectors.broker import (
    ConnectorBroker,
    InMemoryConnectorBroker,
    ProcessConnectorBroker,
)

__all__ = ["ConnectorBroker", "InMemoryConnectorBroker", "ProcessConnectorBroker"]
