"""storage-doctor: an LLM agent that diagnoses and fixes storage problems."""
