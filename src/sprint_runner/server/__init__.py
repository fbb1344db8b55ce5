"""HTTP API for inspecting and driving a sprint."""
