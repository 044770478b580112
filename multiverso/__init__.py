"""A ZeroMQ parameter server framework: servers, worker environment, trainers and storage."""

__version__ = "0.1.0"