"""
Image builder services

- submission_service: assigns image ids and publishes build requests
- build_worker: consumes build requests and runs the build routine

Both sides talk to each other only through the message broker and can run
in separate processes.
"""
