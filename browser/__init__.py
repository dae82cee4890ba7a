"""
browser — Embedded-Browser Login

Login state machine for provider logins that need a real browser context,
the scripts it injects, and its Playwright view.
Part of Chatflow — Business Messaging Client.
"""
