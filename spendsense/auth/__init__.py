"""
Authentication session lifecycle for the SpendSense console.

Design goals:
- One explicitly constructed SessionStore is the single source of truth.
- Redirect-based sign-in keeps the intended in-app route across the OAuth round trip.
- Nothing in this package raises past its own boundary; callers get result values.
"""
