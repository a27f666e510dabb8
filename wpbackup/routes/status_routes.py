"""
Status routes - last session and scheduler state.
"""

from flask import Blueprint, jsonify

from wpbackup.runner import last_session
from wpbackup.scheduler import get_scheduled_jobs, is_scheduler_running


bp = Blueprint('status', __name__, url_prefix='/api')


@bp.route('/status', methods=['GET'])
def get_status():
    """
    Get backup status.

    Returns:
        JSON with:
        - last_backup: Summary of the most recent session in this process
        - scheduler_status: Scheduler running status
        - scheduled_jobs: Scheduled jobs with next run times
    """
    return jsonify({
        'last_backup': last_session(),
        'scheduler_status': 'running' if is_scheduler_running() else 'stopped',
        'scheduled_jobs': get_scheduled_jobs()
    })
