"""
Registry state and the files it leaves in the working directory.

This package is responsible for:
* The in-memory package records and the server lifecycle phase.
* The objects/ directory holding one archive copy per digest.
* The append-only access.log used for external verification.
* The registry.url.txt readiness marker.
"""
