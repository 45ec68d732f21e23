"""Cross-tenant federation: signed state exchange between deployments."""
