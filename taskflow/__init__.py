# ==============================================
# Taskflow Storage Routing Core
# ==============================================
#
# Package Structure (3 Topics + Orchestrator):
#
# taskflow/
# ├── routing/        # Topic 1: Entity categories + storage configuration model
# ├── storage/        # Topic 2: Probe, initialize, route, invalidate, migrate
# ├── persistence/    # Topic 3: Configuration store in the official database
# ├── config.py       # Configuration management
# ├── errors.py       # Error taxonomy
# ├── service.py      # Final orchestrator class
# ├── api.py          # HTTP endpoints
# └── cli.py          # Command line entry point
#
# ==============================================

__version__ = "0.1.0"
