"""MadeToAutomate chat widget backend.

Architecture Overview
=====================

A website support bot behind a small FastAPI surface:

- ``POST /chat`` answers visitor messages with Claude, grounded in the
  tenant's services and FAQ, and offers a discovery call once per session
  after the third message when the visitor's name and email are known.
- ``POST /book`` forwards a chosen slot to the team by email and records
  the visitor's marketing-consent choice.
- ``GET /consents`` exports the consent log (admin token required).
- ``GET /health`` is the liveness probe.

Key Design Decisions
--------------------
- **Sessions** live in memory (``SessionStore``) with per-session locks and
  lazy idle expiry; the widget carries the session id between calls.
- **Turn graph**: a LangGraph ``StateGraph`` runs the model call and the
  one-time booking offer as separate nodes.
- **Resilience**: model, Calendly and SMTP failures are absorbed. Chat always
  replies (fallback text), offers always carry slots (synthetic weekday
  times when Calendly is unavailable) and bookings are acknowledged even
  if the notification mail fails.
- **Dual Interface**: FastAPI server (production) + CLI chat loop.

Package Structure
-----------------
- ``mta_chat/config.py``: Centralized configuration from environment / SSM
- ``mta_chat/sessions.py``: Session store and booking-offer state
- ``mta_chat/engine.py``: Conversation engine (LangGraph)
- ``mta_chat/prompts.py``: Tenant config and grounding instruction
- ``mta_chat/errors.py``: Error taxonomy
- ``mta_chat/server.py``: FastAPI application
- ``mta_chat/main.py``: CLI chat interface
- ``mta_chat/services/``: Calendly, slots, SMTP, consent log, booking, metrics
- ``mta_chat/api/``: FastAPI routes, schemas and shared-secret checks
"""
