"""
auth — Session & Authentication Module

Session persistence, the auth handshake orchestrator, the application API
client and the shared token resolver.
Part of Chatflow — Business Messaging Client.
"""
