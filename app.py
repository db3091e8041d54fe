#!/usr/bin/env python3
"""
Web API for Replicate-backed audio transcription.

Callers submit a resolved audio URL; Replicate runs Whisper asynchronously and
reports back through signed webhooks, with a polling loop as backstop.
"""

import os
import secrets
from dataclasses import dataclass
from typing import Optional

from flask import Flask, Blueprint, current_app, jsonify, request, Response
from werkzeug.middleware.proxy_fix import ProxyFix

from config_store import (
    TranscriberConfig,
    load_config,
    clear_replicate_config,
    get_replicate_config,
    save_replicate_config,
)
from errors import (
    ConfigurationError,
    ProviderError,
    TransientNetworkError,
    StateConflictError,
)
from events import EventBus, JOB_UPDATED
from job_store import JobStore
from jobs import TranscriptionOptions, ACTIVE_STATUSES, SUCCEEDED, OUTPUT_FORMATS
from logger import log_event
from poller import ReconciliationPoller
from replicate_client import PredictionClient
from transcript_output import project_job, render_transcript, usage_metrics, extract_text
from webhook_receiver import WebhookReceiver


@dataclass
class Services:
    """Collaborators shared by all requests of one app instance."""

    config: TranscriberConfig
    store: JobStore
    bus: EventBus
    client: PredictionClient
    receiver: WebhookReceiver
    poller: ReconciliationPoller


api = Blueprint('api', __name__)


def _services() -> Services:
    return current_app.extensions['transkipta']


def _not_found(job_id: str):
    return jsonify({'error': 'Job not found', 'jobId': job_id}), 404


# =============================================================================
# Error translation
# =============================================================================

def _handle_configuration_error(e: ConfigurationError):
    return jsonify({'error': str(e), 'code': e.code}), 503


def _handle_provider_error(e: ProviderError):
    return jsonify({
        'error': 'Transcription provider rejected the request',
        'code': e.code,
        'providerStatus': e.http_status,
        'detail': e.detail,
    }), 502


def _handle_network_error(e: TransientNetworkError):
    return jsonify({
        'error': 'Transcription provider is unreachable, please retry',
        'code': e.code,
    }), 504


# =============================================================================
# Health
# =============================================================================

@api.route('/healthz')
def healthz():
    services = _services()
    return jsonify({
        'status': 'ok',
        'providerConfigured': services.client.is_configured(),
        'webhookVerification': bool(services.config.webhook_secret),
        'pollerRunning': services.poller.running,
    })


# =============================================================================
# Transcriptions
# =============================================================================

@api.route('/api/transcriptions', methods=['POST'])
def api_create_transcription():
    """
    Create a transcription job.

    Body: {audioUrl: str, language?: str, translate?: bool, outputFormat?: 'plain'|'srt'|'vtt'}
    """
    data = request.get_json(silent=True) or {}
    audio_url = (data.get('audioUrl') or '').strip()

    if not audio_url.startswith(('http://', 'https://')):
        return jsonify({'error': 'audioUrl must be an http(s) URL'}), 400

    try:
        options = TranscriptionOptions.from_request(data)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    job = _services().client.create(audio_url, options)
    return jsonify(project_job(job)), 201


@api.route('/api/transcriptions', methods=['GET'])
def api_list_transcriptions():
    """List jobs, newest first. ?status=active limits to starting/processing."""
    jobs = _services().store.list()

    status_filter = request.args.get('status')
    if status_filter == 'active':
        jobs = [j for j in jobs if j.status in ACTIVE_STATUSES]
    elif status_filter:
        jobs = [j for j in jobs if j.status == status_filter]

    return jsonify({'jobs': [project_job(j) for j in jobs]})


@api.route('/api/transcriptions/<job_id>', methods=['GET'])
def api_get_transcription(job_id):
    try:
        job = _services().store.get(job_id)
    except ValueError:
        return _not_found(job_id)
    if job is None:
        return _not_found(job_id)
    return jsonify(project_job(job))


@api.route('/api/transcriptions/<job_id>/transcript', methods=['GET'])
def api_get_transcript(job_id):
    """Download the transcript as plain text, SRT or VTT (?format=)."""
    try:
        job = _services().store.get(job_id)
    except ValueError:
        return _not_found(job_id)
    if job is None:
        return _not_found(job_id)

    if job.status != SUCCEEDED:
        return jsonify({'error': 'Transcript not available', 'status': job.status}), 409

    output_format = request.args.get('format') or job.options.output_format
    if output_format not in OUTPUT_FORMATS:
        return jsonify({'error': f'Unsupported format: {output_format}'}), 400

    mimetype = 'text/vtt' if output_format == 'vtt' else 'text/plain'
    extension = 'txt' if output_format == 'plain' else output_format
    return Response(render_transcript(job.output, output_format),
                    mimetype=mimetype,
                    headers={'Content-Disposition': f'attachment; filename="{job.id}.{extension}"'})


@api.route('/api/transcriptions/<job_id>/cancel', methods=['POST'])
def api_cancel_transcription(job_id):
    """
    Ask the provider to cancel a job.

    The response means "cancellation requested"; the stored status becomes
    `canceled` only once the provider confirms it.
    """
    services = _services()
    try:
        job = services.store.get(job_id)
    except ValueError:
        return _not_found(job_id)
    if job is None:
        return _not_found(job_id)

    if job.terminal:
        return jsonify({'status': job.status, 'message': 'Job already finished',
                        'job': project_job(job)})

    try:
        job = services.client.cancel(job_id)
    except StateConflictError as e:
        log_event('info', 'cancel_result_ignored', jobId=job_id,
                  currentStatus=e.current, candidateStatus=e.candidate)
        job = services.store.get(job_id)

    return jsonify({'status': 'cancel_requested', 'job': project_job(job)})


@api.route('/api/transcriptions/<job_id>', methods=['DELETE'])
def api_delete_transcription(job_id):
    try:
        removed = _services().store.remove(job_id)
    except ValueError:
        return _not_found(job_id)
    if not removed:
        return _not_found(job_id)
    return jsonify({'deleted': True, 'jobId': job_id})


@api.route('/api/transcriptions/prune', methods=['POST'])
def api_prune_transcriptions():
    services = _services()
    deleted = services.store.prune(services.config.retention)
    return jsonify({'deleted': deleted, 'retentionDays': services.config.retention_days})


@api.route('/api/metrics', methods=['GET'])
def api_metrics():
    services = _services()
    return jsonify(usage_metrics(services.store.list(),
                                 cost_per_minute=services.config.cost_per_minute_usd))


# =============================================================================
# Provider webhook
# Called by Replicate, not by browser clients. Authenticated by HMAC signature.
# =============================================================================

@api.route('/api/webhooks/replicate', methods=['POST'])
def api_replicate_webhook():
    result = _services().receiver.handle(request.get_data(as_text=True), request.headers)
    return jsonify(result.body), result.status_code


# =============================================================================
# Admin
# =============================================================================

def _require_admin_token():
    """
    Check for valid admin token. Returns error response tuple if invalid, None if valid.
    """
    admin_token = os.environ.get('ADMIN_TOKEN', '')
    if not admin_token:
        return jsonify({'error': 'Admin endpoint not configured (ADMIN_TOKEN not set)'}), 404

    provided_token = request.headers.get('X-Admin-Token', '')
    if not provided_token or not secrets.compare_digest(provided_token, admin_token):
        return jsonify({'error': 'Unauthorized'}), 401

    return None


@api.route('/api/admin/replicate', methods=['GET'])
def api_admin_replicate_get():
    """
    Get saved and effective Replicate configuration (without secrets).
    Requires X-Admin-Token header.
    """
    auth_error = _require_admin_token()
    if auth_error:
        return auth_error

    services = _services()
    return jsonify({
        'saved': get_replicate_config(services.config.data_root),
        'effective': services.config.safe_summary(),
    })


@api.route('/api/admin/replicate', methods=['POST'])
def api_admin_replicate_post():
    """
    Update saved Replicate configuration.
    Requires X-Admin-Token header.

    Body: { token?, webhookSecret?, webhookUrl?, model? }
    - Omitted fields are preserved, empty strings clear them
    - Environment variables still take precedence; changes apply on restart
    """
    auth_error = _require_admin_token()
    if auth_error:
        return auth_error

    data = request.get_json(silent=True) or {}
    try:
        saved = save_replicate_config(
            token=data.get('token'),
            webhook_secret=data.get('webhookSecret'),
            webhook_url=data.get('webhookUrl'),
            model=data.get('model'),
            root=_services().config.data_root,
        )
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    saved['restartRequired'] = True
    return jsonify(saved)


@api.route('/api/admin/replicate', methods=['DELETE'])
def api_admin_replicate_delete():
    """
    Remove the saved Replicate configuration file.
    Requires X-Admin-Token header. Environment variables are unaffected.
    """
    auth_error = _require_admin_token()
    if auth_error:
        return auth_error

    root = _services().config.data_root
    clear_replicate_config(root)
    return jsonify({'saved': get_replicate_config(root), 'restartRequired': True})


# =============================================================================
# App factory
# =============================================================================

def _log_job_updates(payload: dict) -> None:
    if payload.get('status') == SUCCEEDED:
        text = extract_text(payload.get('output'))
        log_event('info', 'transcription_completed',
                  jobId=payload.get('jobId'), wordCount=len(text.split()))
    else:
        log_event('debug', 'transcription_updated',
                  jobId=payload.get('jobId'), status=payload.get('status'))


def create_app(config: Optional[TranscriberConfig] = None,
               store: Optional[JobStore] = None,
               client: Optional[PredictionClient] = None,
               bus: Optional[EventBus] = None,
               start_poller: Optional[bool] = None) -> Flask:
    """
    Build the Flask app and its collaborators.

    Every collaborator can be injected (tests pass a store on a temp dir and a
    client with a fake HTTP session). The poller starts unless start_poller is
    False or POLLER_ENABLED=0.
    """
    config = config or load_config()
    store = store or JobStore(config.data_root, retention=config.retention)
    bus = bus or EventBus()
    client = client or PredictionClient(config, store)

    services = Services(
        config=config,
        store=store,
        bus=bus,
        client=client,
        receiver=WebhookReceiver(config, store, bus),
        poller=ReconciliationPoller(client, store, bus,
                                    interval=config.poll_interval_seconds,
                                    max_workers=config.poll_max_workers),
    )
    bus.subscribe(JOB_UPDATED, _log_job_updates)

    app = Flask(__name__)

    # Apply ProxyFix for HTTPS detection behind reverse proxy (Caddy, nginx)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)
    app.config['MAX_CONTENT_LENGTH'] = 10 * 1024 * 1024

    app.extensions['transkipta'] = services
    app.register_blueprint(api)

    app.register_error_handler(ConfigurationError, _handle_configuration_error)
    app.register_error_handler(ProviderError, _handle_provider_error)
    app.register_error_handler(TransientNetworkError, _handle_network_error)

    @app.after_request
    def after_request_headers(response):
        if request.path.startswith('/api/'):
            response.headers['Cache-Control'] = 'no-store'
            response.headers['Pragma'] = 'no-cache'
            response.headers['X-Content-Type-Options'] = 'nosniff'
        return response

    if start_poller is None:
        start_poller = os.environ.get('POLLER_ENABLED', '1') != '0'
    if start_poller:
        services.poller.start()

    log_event('info', 'app_started', **config.safe_summary())
    return app


if __name__ == '__main__':
    application = create_app()
    application.run(
        host=os.environ.get('HOST', '0.0.0.0'),
        port=int(os.environ.get('PORT', '5000')),
    )
