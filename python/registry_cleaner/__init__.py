"""
Registry cleaner package.

Removes stale image manifests from the child repositories of a container
registry base repository while keeping images in use by cluster workloads,
images protected by the exception file, and the newest tags of every
repository.
"""

__version__ = "1.0.0"
