"""
Authentication for the LyriaSong site.

Design goals:
- Three ways in: email + password, emailed one-time code, social (Google, GitHub, X).
- One Identity per email address no matter which path created it.
- Server-side sessions referenced by a signed HttpOnly cookie.
"""
