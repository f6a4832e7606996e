# Polymarket clients
from .clob_client import CLOBClient, ApiResponse

__all__ = ["CLOBClient", "ApiResponse"]
