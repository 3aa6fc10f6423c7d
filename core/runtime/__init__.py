# Path: core/runtime/__init__.py
# Purpose: Package initializer for execution-provider detection, session pooling, and runtime caching.
# Layer: core/runtime.
# Details: Submodules are imported directly by callers to keep onnxruntime loading explicit.
