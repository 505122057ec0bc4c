"""
MKVE worker: job-oriented worker protocol for an out-of-process media engine.

A controller sends commands (load, test, submit, run, cancel); the worker
classifies each job's arguments, admits it against a memory ceiling, and
reports staged progress until exactly one terminal message.
"""

__version__ = "4.3.0"
