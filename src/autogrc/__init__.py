"""AutoGRC Assistant: an LLM tool-orchestration service over a compliance datastore."""
