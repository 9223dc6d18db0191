"""
External collaborators of the sync engine: the upstream orders API, the
persistent key-value store and the diagnostics recorder.
"""
