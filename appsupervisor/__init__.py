"""
App Supervisor - a process supervisor for apps declared in an ecosystem file.

Launches each declared app as one or more child processes, restarts crashed
instances with backoff, optionally restarts on file changes, and exposes a
management API for status, control and captured output.
"""

__version__ = "0.1.0"
