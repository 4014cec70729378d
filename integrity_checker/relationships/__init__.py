"""Public APIs for relationship inference."""

from .discovery import (
    RelationshipDiscoveryResult,
    RelationshipSummary,
    TableDefinitionMetadataProvider,
    discover_relationships,
    iter_relationship_candidates,
)

__all__ = [
    "RelationshipDiscoveryResult",
    "RelationshipSummary",
    "TableDefinitionMetadataProvider",
    "discover_relationships",
    "iter_relationship_candidates",
]
