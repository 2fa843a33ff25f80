"""ccstudio: session and stream orchestration for Claude Code desktop frontends."""
