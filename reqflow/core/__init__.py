"""Core vocabulary shared by models, services and blueprints."""
