"""
Image Builder Backend

Accepts image build requests over HTTP, assigns each one an image id and
hands it to a build worker through RabbitMQ.
"""

__version__ = "0.1.0"
