"""
Command line interface (flask --app wpbackup <command>).

Commands:
- backup: run one backup session, exit with its code
- prune: apply the retention policy only
- check: validate settings and test the WebDAV connection
- encrypt-password: print an encrypted WEBDAV_PASSWORD_ENCRYPTED value
- serve: start the scheduler and the status server
"""

import sys

import click
from flask import current_app

from wpbackup.backup.session import ExitCode, SessionLog
from wpbackup.backup.transport import TransportError
from wpbackup.config import SettingsError, load_settings, write_example_config


def _load_settings_or_exit():
    """Load settings from the app config, creating an example file on first run."""
    try:
        return load_settings(current_app.config)
    except SettingsError as e:
        config_file = current_app.config.get('CONFIG_FILE')
        if config_file and write_example_config(config_file):
            click.echo(f"Configuration file not found. Created example config at: {config_file}", err=True)
            click.echo(f"Please edit {config_file} with your Storage Box credentials and run again.", err=True)
        for problem in e.problems:
            click.echo(f"[ERROR] {problem}", err=True)
        sys.exit(ExitCode.CONFIG)


def register_commands(app):
    """Attach the CLI commands to a Flask app."""

    @app.cli.command('backup')
    def backup_command():
        """Run one backup session."""
        from wpbackup.runner import run_backup

        settings = _load_settings_or_exit()
        session = run_backup(settings)
        sys.exit(int(session.exit_code))

    @app.cli.command('prune')
    def prune_command():
        """Delete old remote backups, keeping REMOTE_BACKUP_COUNT."""
        from wpbackup.runner import run_prune

        settings = _load_settings_or_exit()
        try:
            result = run_prune(settings, SessionLog())
        except TransportError as e:
            click.echo(f"[ERROR] {e}", err=True)
            sys.exit(ExitCode.FAILURE)

        click.echo(f"Kept {len(result.kept)}, deleted {len(result.deleted)}, failed {len(result.failed)}")
        sys.exit(ExitCode.FAILURE if result.failed else ExitCode.SUCCESS)

    @app.cli.command('check')
    def check_command():
        """Validate settings and test the WebDAV connection."""
        from wpbackup.runner import create_client

        settings = _load_settings_or_exit()
        click.echo(repr(settings))
        try:
            with create_client(settings) as client:
                client.test_connection(settings.remote_dir)
        except TransportError as e:
            click.echo(f"[ERROR] {e}", err=True)
            sys.exit(ExitCode.REMOTE_FOLDER)

        click.echo("Connection OK")

    @app.cli.command('encrypt-password')
    @click.password_option('--password', prompt='WebDAV password')
    def encrypt_password_command(password):
        """Encrypt the WebDAV password with SECRET_KEY."""
        from wpbackup.utils.crypto import CredentialCipher

        secret_key = current_app.config.get('SECRET_KEY')
        if not secret_key:
            click.echo("[ERROR] SECRET_KEY must be set to encrypt credentials", err=True)
            sys.exit(ExitCode.CONFIG)

        token = CredentialCipher(secret_key).encrypt(password)
        click.echo(f'WEBDAV_PASSWORD_ENCRYPTED="{token}"')

    @app.cli.command('serve')
    @click.option('--host', default='127.0.0.1', show_default=True)
    @click.option('--port', default=5000, show_default=True, type=int)
    def serve_command(host, port):
        """Run scheduled backups and serve /health and /api/status."""
        import atexit
        from wpbackup.scheduler import init_scheduler, start_scheduler, stop_scheduler

        app_ = current_app._get_current_object()
        _load_settings_or_exit()

        init_scheduler(app_)
        start_scheduler()
        atexit.register(stop_scheduler)

        app_.run(host=host, port=port, use_reloader=False)
