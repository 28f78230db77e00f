"""Dental Scheduler: the scheduling engine behind a dental voice receptionist.

Architecture Overview
=====================

The voice platform calls one **tool** per conversational turn and sends the
conversation state it got back from the previous turn.  Nothing is held in
server memory between turns.

Practice snapshot → appointment-type resolver → eligibility resolver →
availability engine → booking state machine → booking executor

1. **find_appointment_type** scores the caller's words against the
   practice's bookable appointment types.
2. **check_available_slots** resolves which providers/operatories can take
   that type, queries NexHealth, drops lunch-hour slots and offers up to
   three times.
3. **book_appointment** reads the chosen slot back first; only an explicit
   confirmation on a later turn triggers the single ``POST /appointments``.
4. **find_patient** / **set_patient_status** identify the caller;
   **create_patient_record** registers a new one so they can be booked.

Key Design Decisions
--------------------
- **Immutable state**: ``ConversationState`` is a frozen pydantic model with
  a versioned camelCase wire format; restoring a snapshot never fails.
- **Errors are data**: every operation returns a ``ToolResult`` carrying an
  ``ErrorCode``; the voice layer composes what the caller hears.
- **Resilience**: NexHealth reads retry with exponential backoff; the booking
  write is never retried.
- **Dual Interface**: FastAPI server (production) + CLI tool loop (development).

Package Structure
-----------------
- ``dental_scheduler/config.py``: configuration from env vars / SSM
- ``dental_scheduler/practice.py``: practice snapshot + repositories
- ``dental_scheduler/state.py``: conversation state, migration, restore
- ``dental_scheduler/results.py``: ``ToolResult`` and error codes
- ``dental_scheduler/scheduling/``: resolver, eligibility, availability, booking, patients
- ``dental_scheduler/services/``: NexHealth client, call log, debug log, metrics
- ``dental_scheduler/tools/``: LangChain tools and the turn dispatcher
- ``dental_scheduler/api/``: FastAPI routes and schemas
- ``dental_scheduler/server.py``: FastAPI application
- ``dental_scheduler/main.py``: CLI tool loop
"""
