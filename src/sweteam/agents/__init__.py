"""Agent roles: the architect plans and reviews, SWE agents implement."""

from sweteam.agents.architect import ArchitectAgent
from sweteam.agents.base import BaseAgent, PlannerCapability, WorkerCapability
from sweteam.agents.swe import SWEAgent

__all__ = ["ArchitectAgent", "BaseAgent", "PlannerCapability", "SWEAgent", "WorkerCapability"]
