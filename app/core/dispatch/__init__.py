# app/core/dispatch/__init__.py
"""
Dispatch core: job lifecycle, driver matching, live location, notifications.

- ``domain``: Job, Driver, LocationSample, Notification, events
- ``state_machine``: job status adjacency
- ``location_tracker``: last-known positions, haversine, route ordering
- ``driver_registry``: driver records, eligibility, reservations
- ``job_engine``: the only writer of job status
- ``notifications``: event -> notification table, store, async dispatcher
- ``container``: wires the above to a backend and push provider

Transport code reaches the core through the container stored on
``app.state`` by the HTTP lifespan.
"""
