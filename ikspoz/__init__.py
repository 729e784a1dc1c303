"""
ikspoz - expose a local HTTP endpoint through a public relay.

Requests arriving on the relay are tunneled to a fixed target base URL and the
target's responses are streamed back over the same channel.
"""

__version__ = "0.1.0"
__author__ = "ikspoz contributors"
__description__ = "Expose a local HTTP endpoint to the internet through a relayed tunnel"
