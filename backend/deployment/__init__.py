"""
Deployment module for DockSteward

Turns service settings into running containers.

Components:
    - profiles: per-service image, layout, environment and health checks
    - compose_generator: docker-compose.yml and .env rendering
    - container_factory: container creation through the Docker SDK
    - lifecycle: start/stop/restart/status/clean/logs/info
"""
