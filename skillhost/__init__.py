"""skillhost - host runtime for skills running as supervised subprocesses"""

__version__ = "0.1.0"
