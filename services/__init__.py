"""
services — External Collaborators

Push-notification registration and local content cache, injected into the
handshake orchestrator with no-op defaults.
Part of Chatflow — Business Messaging Client.
"""
