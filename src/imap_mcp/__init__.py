"""
IMAP MCP Server
===============

Hand-rolled IMAP4rev1 client engine with an MCP tool surface for inbox
access: fetch, mark read and trash over TLS, one command at a time.
"""

__version__ = "0.1.0"

from imap_mcp.credentials import Credentials, guess_imap_host, retrieve_credentials
from imap_mcp.ids import message_id, uid_from_message_id
from imap_mcp.imap_client import IMAPClient
from imap_mcp.service import IMAPService
from imap_mcp.settings import Settings

__all__ = [
    "IMAPClient",
    "IMAPService",
    "Settings",
    "Credentials",
    "guess_imap_host",
    "retrieve_credentials",
    "message_id",
    "uid_from_message_id",
]
