"""Sprint task engine.

This package provides the task model, the file-backed store, the dependency
graph, the lifecycle validator and the engine that ties them together.
"""
