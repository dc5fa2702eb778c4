"""
Backend package for the image dashboard API.

Provides a FastAPI application that signs users in with Google, stores their
uploads in Cloud Storage and pushes processing notifications over WebSockets.
"""
