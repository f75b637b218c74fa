"""cheat-triager: live Windows triage for game-cheat artifacts."""

VERSION = "0.1.0"
