"""Service layer between the routers and the engines."""
