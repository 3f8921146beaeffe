"""Status cache for the Access Service."""
