"""Phase registries shipped with the package (one YAML file per registry)."""
