"""Client runtime for the IntentFi intent and launchpad programs."""

__version__ = "0.1.0"
