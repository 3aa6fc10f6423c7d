# Path: core/__init__.py
# Purpose: Package initializer for core application layer.
# Layer: core.
# Details: Hosts the runtime, scoring, classifier, pipeline, export, and storage subpackages plus the service facade.
