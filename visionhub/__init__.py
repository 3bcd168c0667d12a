"""visionhub: model-task routing and dispatch for pluggable vision analyses."""
