# Workers: long-running processes. Run from backend/ with:
#   python -m workers.position_tracker_worker
