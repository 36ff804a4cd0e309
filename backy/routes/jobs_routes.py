"""
Backup jobs routes - start jobs in the background and follow them.
"""

import json
import queue

from flask import Blueprint, Response, jsonify, request

from backy import scheduler
from backy.backup.executor import JobKind
from backy.commands import (
    BackupStartRequest,
    SaveBlobLocalRequest,
    SftpBackupRequest,
    ValidationError,
    build_request
)


bp = Blueprint('jobs', __name__, url_prefix='/api/jobs')

REQUEST_TYPES = {
    JobKind.LOCAL: SaveBlobLocalRequest,
    JobKind.SFTP: SftpBackupRequest,
    JobKind.REPOSITORY: BackupStartRequest
}

# Seconds between SSE keepalive comments while a job is quiet
EVENT_KEEPALIVE = 15.0


@bp.route('/', methods=['GET'])
def list_jobs():
    """
    Get snapshots of all registered jobs.

    Returns:
        JSON array of job snapshots, newest first
    """
    jobs = sorted(scheduler.list_jobs(), key=lambda job: job.created_at, reverse=True)
    return jsonify([job.snapshot() for job in jobs])


@bp.route('/<kind>', methods=['POST'])
def start_job(kind):
    """
    Start a backup job in the background.

    Args:
        kind: 'local', 'sftp' or 'repository'

    Request body: Same fields as the matching command

    Returns:
        JSON with the job id and initial state
    """
    try:
        job_kind = JobKind(kind)
    except ValueError:
        return jsonify({'error': f'Unknown job kind: {kind}'}), 404

    try:
        job_request = build_request(REQUEST_TYPES[job_kind], request.get_json(silent=True))
    except ValidationError as e:
        return jsonify({'error': str(e)}), 400

    job = job_request.to_job()
    try:
        scheduler.submit_job(job)
    except RuntimeError as e:
        return jsonify({'error': str(e)}), 503

    return jsonify({
        'id': job.id,
        'state': job.state.value,
        'message': 'Backup job started'
    }), 202


@bp.route('/<job_id>', methods=['GET'])
def get_job(job_id):
    """
    Get a job snapshot.

    Args:
        job_id: Job id returned by start_job
    """
    job = scheduler.get_job(job_id)
    if job is None:
        return jsonify({'error': 'Job not found'}), 404
    return jsonify(job.snapshot())


@bp.route('/<job_id>/events', methods=['GET'])
def job_events(job_id):
    """
    Stream job events as server-sent events.

    The stream ends after the job reaches a terminal state. Events are
    consumed from the job's queue, so each event goes to one reader only.
    """
    job = scheduler.get_job(job_id)
    if job is None:
        return jsonify({'error': 'Job not found'}), 404

    def generate():
        while True:
            try:
                event = job.events.get(timeout=EVENT_KEEPALIVE)
            except queue.Empty:
                if job.done.is_set():
                    break
                yield ': keepalive\n\n'
                continue

            yield f"event: {event.type}\ndata: {json.dumps(event.to_dict())}\n\n"
            if event.type == 'state' and event.state.is_terminal:
                break

    return Response(generate(), mimetype='text/event-stream', headers={'Cache-Control': 'no-cache'})


@bp.route('/<job_id>/cancel', methods=['POST'])
def cancel_job(job_id):
    """
    Request cancellation of a running job.

    Returns:
        JSON with success status
    """
    job = scheduler.get_job(job_id)
    if job is None:
        return jsonify({'error': 'Job not found'}), 404

    if not scheduler.cancel_job(job_id):
        return jsonify({
            'success': False,
            'error': f'Job is already {job.state.value}'
        }), 409

    return jsonify({
        'success': True,
        'message': 'Cancellation requested'
    })


@bp.route('/<job_id>', methods=['DELETE'])
def release_job(job_id):
    """
    Release a finished job from the registry.

    Returns:
        JSON with the final job snapshot
    """
    try:
        job = scheduler.release_job(job_id)
    except ValueError as e:
        return jsonify({'error': str(e)}), 409

    if job is None:
        return jsonify({'error': 'Job not found'}), 404
    return jsonify(job.snapshot())
