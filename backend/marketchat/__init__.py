"""marketchat: real-time conversation synchronization for the service marketplace.

Subpackages:
    - chat: client-side synchronization core (connection, rooms, messages,
      history, conversation store, presence)
    - gateway: in-memory reference chat gateway (FastAPI)
"""

__version__ = "0.1.0"
