from __future__ import annotations

# Import fixtures from testing/ so they are known by pytest
from testing.relay_server import addressed_relay_server
from testing.relay_server import identified_relay_server
from testing.relay_server import relay_server
from testing.ssl import tls
