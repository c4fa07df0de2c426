"""OAuth authorization flow and callback transports."""
