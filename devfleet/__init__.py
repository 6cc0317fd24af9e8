"""
DevFleet
========
Revue automatique de Pull Requests par une flotte d'agents.
Reçoit les webhooks de la GitHub App, exécute les agents activés
sur le dépôt dans des sandboxes éphémères et publie un Check Run
GitHub : success / failure.
"""

__version__ = "1.0.0"
