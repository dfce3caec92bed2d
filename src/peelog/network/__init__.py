"""Remote service clients and connectivity monitoring."""

from peelog.network.connectivity import ConnectivityMonitor
from peelog.network.http import ServiceClient
from peelog.network.remote import RemoteService

__all__ = ["ConnectivityMonitor", "RemoteService", "ServiceClient"]
