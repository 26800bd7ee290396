"""
Container module for Raptor

Components:
    - provisioning: Create containers and update their limits and startup configuration
    - startup: {{VARIABLE}} startup command templates
    - routes: API endpoints for containers, lifecycle commands and bindings
"""
