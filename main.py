#!/usr/bin/env python3
"""
Grade Export - Main Entry Point

This application exports course grades from a gradebook database:
- One CSV row per graded user, in a stable user order
- Real, percentage and letter grade columns
- Optional feedback columns, as plain text or Markdown
- Profile and custom profile field columns
- Group and active enrolment filters

The application supports:
- Encrypted database connection profiles
- Streaming of users and grades with constant memory use
- Progress display while exporting
"""

import sys
from gradeexport.ui.cli import main

if __name__ == "__main__":
    sys.exit(main())
