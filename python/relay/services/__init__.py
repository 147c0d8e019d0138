"""Business logic services.

Service-layer modules implement the reply pipeline. Routes and tasks call
into them; they never import from the API layer.
"""
