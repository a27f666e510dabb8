#!/usr/bin/env python3
"""One-shot backup runner for cron; exits with the session's exit code"""
import sys

from wpbackup import create_app
from wpbackup.backup.session import ExitCode
from wpbackup.config import SettingsError, load_settings, write_example_config
from wpbackup.runner import run_backup

if __name__ == '__main__':
    app = create_app()

    with app.app_context():
        try:
            settings = load_settings(app.config)
        except SettingsError as e:
            config_file = app.config.get('CONFIG_FILE')
            if config_file and write_example_config(config_file):
                app.logger.error(f"Configuration file not found. Created example config at: {config_file}")
            app.logger.error(str(e))
            sys.exit(ExitCode.CONFIG)

        session = run_backup(settings)

    sys.exit(int(session.exit_code))
