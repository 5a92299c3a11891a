"""bundle-tool: mirror resolution and provenance extraction for OLM bundles."""

__version__ = "0.1.0"
