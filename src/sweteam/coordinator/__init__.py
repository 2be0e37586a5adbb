"""Run coordination: planning, worker pools, the workflow engine and the service."""
