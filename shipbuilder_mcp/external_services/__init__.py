# shipbuilder_mcp/external_services/__init__.py
from .shipbuilder_api import ShipbuilderApiClient

__all__ = ["ShipbuilderApiClient"]
