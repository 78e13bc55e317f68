# ABOUTME: Utilities package initialization for the Argo CD emulator
# ABOUTME: Contains the injectable collaborators of the engine plus logging

"""
Argo CD emulator utilities package

Shared utilities:
    - clock.py: SystemClock and a ManualClock for tests
    - logging.py: Structured logging with correlation IDs and audit trail
    - resolver.py: Revision, directory, file and chart lookups per repository
    - runtime.py: Simulated hook runner, manifest applier and drift observer
    - transport.py: HTTP notification delivery with retry logic
"""
