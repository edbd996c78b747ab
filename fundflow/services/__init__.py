"""Service-layer collaborators used by the approval engine."""
