"""Generate and validate Wiki.js deployment bundles for Kubernetes."""

__version__ = "0.1.0"
