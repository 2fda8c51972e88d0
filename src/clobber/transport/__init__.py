"""Matrix client-server transport: outbound calls and the sync loop."""
