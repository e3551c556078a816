"""LeadBridge - OAuth install broker for LeadConnector marketplace apps."""

__version__ = "0.1.0"
