"""Source connectors -- pluggable adapters that feed the sync engine.

Provides the abstract SourceConnector interface and:
- PaginatedSourceConnector: Implements sync operations on top of SyncRunner
- RestCRMConnector: Deals, contacts and accounts from a CRM REST API
"""

from src.syncengine.connectors.base import PaginatedSourceConnector, SourceConnector
from src.syncengine.connectors.field_mapping import CRM_PROPERTY_MAP, from_source_properties
from src.syncengine.connectors.rest_crm import RestCRMConnector

__all__ = [
    "SourceConnector",
    "PaginatedSourceConnector",
    "RestCRMConnector",
    "CRM_PROPERTY_MAP",
    "from_source_properties",
]
