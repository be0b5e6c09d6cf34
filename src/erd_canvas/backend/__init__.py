"""ERD Canvas backend - project state, canvas synchronization and the HTTP API."""
