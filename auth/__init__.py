"""auth/ -- Identity and session-credential core for passgate.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
Outer applications (HTTP routes, templates, cookie handling) import from
auth/, never the other way around. auth.accounts.AccountService is the
entry point; the other modules are its building blocks.
"""
