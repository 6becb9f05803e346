"""Chain event handlers, one module per contract family."""
