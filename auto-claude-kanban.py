#!/usr/bin/env python3
"""
Kanban board orchestrator: polls the board and runs Claude Code agent
sessions for ready tasks.

Environment Variables:
- KANBAN_API_KEY: Bearer token for the board API (required)
- KANBAN_API_URL: Board base URL (default http://localhost:3000)
- POLL_INTERVAL: Seconds between poll cycles (default 900)
- MAX_CONCURRENT: Maximum simultaneous agent sessions (default 3)
- MAX_RETRIES: Failures before a task is escalated to a human (default 3)
- SESSION_TIMEOUT: Seconds before an agent is killed (default 2700)
- WORKSPACE_ROOT: Base directory (default /workspace)
- PROJECTS_DIR: Project clones (default $WORKSPACE_ROOT/projects)
- LOG_DIR: Orchestrator log directory (default $WORKSPACE_ROOT/.memory)
- GH_TOKEN: GitHub token for cloning and the PR workflow (optional)
"""

from auto_claude_kanban.cli import main

if __name__ == '__main__':
    main()
