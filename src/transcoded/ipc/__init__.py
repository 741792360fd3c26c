"""Socket protocol, event bus, server and client."""
