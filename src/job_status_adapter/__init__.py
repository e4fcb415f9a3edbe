SERVICE_NAME = "job-status-adapter"

__version__ = "0.1.0"
