"""Region-based blob storage: memory and file targets, transfer managers, providers, clients and target migration over in-process engines."""

__version__ = "0.6.1"

__all__ = [
    "async_request",
    "backend",
    "buffer_wrapper",
    "client",
    "engine",
    "file_backend",
    "memory_backend",
    "migration",
    "provider",
    "transfer_manager",
]