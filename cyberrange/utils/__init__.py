# Utilities package - logging setup and auth decorators
