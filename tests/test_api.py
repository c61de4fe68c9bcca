"""
API Endpoint Tests
"""
import io
import json
from datetime import datetime, timedelta, timezone
from unittest import mock

import PyPDF2

from casekit import db
from casekit.models import Case, Code, ExtractionJob, JobStatus, Module
from casekit.services.pdf_service import ExtractionError, ExtractionResult
from casekit.services.render_service import RenderError


def post_json(client, url, payload, method='post'):
    return getattr(client, method)(url, data=json.dumps(payload), content_type='application/json')


class TestHealthEndpoints:
    """Test health check endpoints"""

    def test_healthz(self, client):
        """Health check should return ok"""
        response = client.get('/healthz')
        assert response.status_code == 200

        data = json.loads(response.data)
        assert data['status'] == 'ok'
        assert data['database'] == 'ok'
        assert 'version' in data
        assert 'timestamp' in data
        assert data['openai_ready'] is False

    def test_version(self, client):
        """Version endpoint should return build info"""
        response = client.get('/version')
        assert response.status_code == 200

        data = json.loads(response.data)
        assert 'version' in data
        assert data['features']['pdf_export'] is True


class TestAuthRequired:
    """Every admin endpoint redirects anonymous users to login"""

    def test_cases_requires_auth(self, client):
        response = client.get('/cases')
        assert response.status_code == 302
        assert '/login' in response.headers['Location']

    def test_export_requires_auth(self, client):
        response = client.post('/modules/1/export_pdf')
        assert response.status_code == 302

    def test_extract_requires_auth(self, client):
        response = post_json(client, '/extract_start', {'url': 'https://files.example.test/a.pdf'})
        assert response.status_code == 302


class TestCases:
    """Case CRUD"""

    def test_create_case(self, authenticated_client):
        response = post_json(authenticated_client, '/cases', {'title': 'Vanishing Act', 'theme': 'magic'})
        assert response.status_code == 201

        data = json.loads(response.data)
        assert data['ok'] is True
        assert data['case']['title'] == 'Vanishing Act'
        assert data['case']['status'] == 'editing'
        assert data['case']['modules'] == []

    def test_create_case_requires_title(self, authenticated_client):
        response = post_json(authenticated_client, '/cases', {'title': '   '})
        assert response.status_code == 400
        assert json.loads(response.data)['ok'] is False

    def test_list_cases_search_and_filter(self, authenticated_client, sample_case):
        post_json(authenticated_client, '/cases', {'title': 'Harbour Heist', 'status': 'distributed'})

        data = json.loads(authenticated_client.get('/cases?search=lighthouse').data)
        assert [c['title'] for c in data['cases']] == ['The Lighthouse Murder']

        data = json.loads(authenticated_client.get('/cases?status=distributed').data)
        assert [c['title'] for c in data['cases']] == ['Harbour Heist']

    def test_list_cases_rejects_unknown_status(self, authenticated_client):
        response = authenticated_client.get('/cases?status=lost')
        assert response.status_code == 400

    def test_get_case_includes_ordered_modules(self, authenticated_client, sample_case):
        data = json.loads(authenticated_client.get(f'/cases/{sample_case.id}').data)
        assert [m['title'] for m in data['case']['modules']] == ['Police Report', 'Sealed Letter']
        assert data['case']['modules'][0]['content']['stamp'] == 'confidential'

    def test_update_case(self, authenticated_client, sample_case):
        response = post_json(authenticated_client, f'/cases/{sample_case.id}',
                             {'status': 'ready_to_print', 'complexity': 'easy'}, method='put')
        data = json.loads(response.data)
        assert response.status_code == 200
        assert data['case']['status'] == 'ready_to_print'
        assert data['case']['complexity'] == 'easy'

    def test_update_case_rejects_bad_complexity(self, authenticated_client, sample_case):
        response = post_json(authenticated_client, f'/cases/{sample_case.id}', {'complexity': 'extreme'}, method='put')
        assert response.status_code == 400

    def test_delete_case_keeps_codes(self, authenticated_client, sample_case):
        code = Code(code='NEW-1234-A', case_id=sample_case.id, case_name=sample_case.title)
        db.session.add(code)
        db.session.commit()
        case_id, code_id = sample_case.id, code.id

        response = authenticated_client.delete(f'/cases/{case_id}')
        assert response.status_code == 200

        db.session.expire_all()
        assert db.session.get(Case, case_id) is None
        assert Module.query.filter_by(case_id=case_id).count() == 0
        kept = db.session.get(Code, code_id)
        assert kept is not None
        assert kept.case_id is None
        assert kept.case_name == 'The Lighthouse Murder'

    def test_missing_case_is_404(self, authenticated_client):
        response = authenticated_client.get('/cases/9999')
        assert response.status_code == 404
        assert json.loads(response.data)['error'] == 'Case not found'


class TestModules:
    """Document editing"""

    def test_add_document_placeholder(self, authenticated_client, sample_case):
        response = authenticated_client.post(f'/cases/{sample_case.id}/modules')
        assert response.status_code == 201

        module = json.loads(response.data)['module']
        assert module['title'] == 'New Document'
        assert module['type'] == 'document'
        assert module['status'] == 'draft'
        assert module['position'] == 2
        assert module['content'] == {
            'body': '', 'header': '', 'footer': '', 'stamp': 'none',
            'signature': '', 'logo': '', 'subtitle': '',
        }

    def test_save_document_merges_envelope(self, authenticated_client, sample_case):
        module_id = sample_case.modules[0].id
        response = post_json(authenticated_client, f'/modules/{module_id}', {
            'title': 'Police Report (revised)',
            'status': 'incomplete',
            'content': {'footer': 'Page 1', 'stamp': 'top_secret'},
        }, method='put')
        assert response.status_code == 200

        module = json.loads(response.data)['module']
        assert module['title'] == 'Police Report (revised)'
        assert module['status'] == 'incomplete'
        assert module['content']['body'] == 'Victim found at 23:40.'
        assert module['content']['footer'] == 'Page 1'
        assert module['content']['stamp'] == 'top_secret'

    def test_save_document_accepts_serialized_envelope(self, authenticated_client, sample_case):
        module_id = sample_case.modules[0].id
        content = json.dumps({'body': 'Replaced', 'stamp': 'evidence'})
        response = post_json(authenticated_client, f'/modules/{module_id}', {'content': content}, method='put')

        module = json.loads(response.data)['module']
        assert module['content']['body'] == 'Replaced'
        assert module['content']['header'] == ''
        assert module['content']['stamp'] == 'evidence'

    def test_empty_fields_are_allowed(self, authenticated_client, sample_case):
        module_id = sample_case.modules[0].id
        response = post_json(authenticated_client, f'/modules/{module_id}',
                             {'title': '', 'content': {'body': '', 'header': ''}}, method='put')
        assert response.status_code == 200

    def test_save_document_rejects_unknown_type(self, authenticated_client, sample_case):
        module_id = sample_case.modules[0].id
        response = post_json(authenticated_client, f'/modules/{module_id}', {'type': 'scroll'}, method='put')
        assert response.status_code == 400

    def test_move_document(self, authenticated_client, sample_case):
        second_id = sample_case.modules[1].id
        response = post_json(authenticated_client, f'/modules/{second_id}/move', {'direction': 'up'})
        assert response.status_code == 200

        titles = [m['title'] for m in json.loads(response.data)['modules']]
        assert titles == ['Sealed Letter', 'Police Report']

    def test_move_first_up_is_noop(self, authenticated_client, sample_case):
        first_id = sample_case.modules[0].id
        response = post_json(authenticated_client, f'/modules/{first_id}/move', {'direction': 'up'})
        titles = [m['title'] for m in json.loads(response.data)['modules']]
        assert titles == ['Police Report', 'Sealed Letter']

    def test_delete_document(self, authenticated_client, sample_case):
        module_id = sample_case.modules[0].id
        response = authenticated_client.delete(f'/modules/{module_id}')
        assert response.status_code == 200

        db.session.expire_all()
        assert db.session.get(Module, module_id) is None


class TestUpload:
    """Attaching files to a document"""

    @mock.patch('casekit.services.aws_service.s3_client')
    def test_upload_sets_body_url(self, s3_client, authenticated_client, sample_case, png_factory):
        module_id = sample_case.modules[0].id
        response = authenticated_client.post(
            f'/modules/{module_id}/upload',
            data={'file': (io.BytesIO(png_factory()), 'Crime Scene.png', 'image/png'), 'field': 'body'},
            content_type='multipart/form-data',
        )
        assert response.status_code == 200

        data = json.loads(response.data)
        assert data['url'].startswith(f'https://files.example.test/cases/{sample_case.id}/')
        assert data['url'].endswith('_Crime_Scene.png')
        assert data['module']['content']['body'] == data['url']
        s3_client.return_value.put_object.assert_called_once()

    @mock.patch('casekit.services.aws_service.s3_client')
    def test_upload_rejects_unsupported_type(self, s3_client, authenticated_client, sample_case):
        module_id = sample_case.modules[0].id
        response = authenticated_client.post(
            f'/modules/{module_id}/upload',
            data={'file': (io.BytesIO(b'#!/bin/sh'), 'run.sh', 'application/x-sh')},
            content_type='multipart/form-data',
        )
        assert response.status_code == 400
        s3_client.return_value.put_object.assert_not_called()

    def test_upload_requires_file(self, authenticated_client, sample_case):
        response = authenticated_client.post(f'/modules/{sample_case.modules[0].id}/upload')
        assert response.status_code == 400


class TestPreview:
    """HTML facsimile"""

    def test_text_body_is_preformatted(self, authenticated_client):
        body = 'Line one\n    indented line'
        response = post_json(authenticated_client, '/preview', {'title': 'Memo', 'type': 'document',
                                                                 'content': {'body': body}})
        assert response.status_code == 200
        html = response.data.decode()
        assert '<pre class="body">Line one\n    indented line</pre>' in html
        assert '500px' in html

    def test_url_body_is_attachment(self, authenticated_client):
        url = 'https://files.example.test/cases/1/photo.JPG'
        html = post_json(authenticated_client, '/preview', {'content': {'body': url}}).data.decode()
        assert 'class="attachment-image"' in html
        assert '<pre class="body">' not in html

    def test_pdf_and_document_attachments(self, authenticated_client):
        html = post_json(authenticated_client, '/preview',
                         {'content': {'body': 'https://x.test/report.pdf'}}).data.decode()
        assert 'class="attachment-pdf"' in html

        html = post_json(authenticated_client, '/preview',
                         {'content': {'body': 'https://x.test/notes.docx'}}).data.decode()
        assert 'Attached file:' in html
        assert 'notes.docx' in html

    def test_envelope_uses_c5_paper(self, authenticated_client, sample_case):
        module_id = sample_case.modules[1].id
        html = authenticated_client.get(f'/modules/{module_id}/preview').data.decode()
        assert '600px' in html
        assert 'Sealed Letter' in html

    def test_stamp_is_shown(self, authenticated_client, sample_case):
        html = authenticated_client.get(f'/modules/{sample_case.modules[0].id}/preview').data.decode()
        assert 'CONFIDENTIAL' in html


class TestExportPdf:
    """PDF export"""

    def test_export_text_document(self, authenticated_client, sample_case):
        module_id = sample_case.modules[0].id
        response = post_json(authenticated_client, f'/modules/{module_id}/export_pdf',
                             {'title': "Inspector's Report #2"})
        assert response.status_code == 200
        assert response.mimetype == 'application/pdf'
        assert 'inspectors_report_2.pdf' in response.headers['Content-Disposition']

        reader = PyPDF2.PdfReader(io.BytesIO(response.data))
        assert len(reader.pages) == 1

    def test_long_body_spans_pages(self, authenticated_client, sample_case):
        module_id = sample_case.modules[0].id
        body = '\n'.join(f'Line {i}' for i in range(200))
        response = post_json(authenticated_client, f'/modules/{module_id}/export_pdf',
                             {'content': {'body': body}})
        assert response.status_code == 200

        reader = PyPDF2.PdfReader(io.BytesIO(response.data))
        assert len(reader.pages) > 1

    def test_render_failure_aborts_export(self, authenticated_client, sample_case):
        module_id = sample_case.modules[0].id
        with mock.patch('casekit.api.render_raster', side_effect=RenderError('Could not load image')):
            response = post_json(authenticated_client, f'/modules/{module_id}/export_pdf', {})
        assert response.status_code == 502
        data = json.loads(response.data)
        assert data['ok'] is False
        assert 'Could not load image' in data['error']

    def test_export_missing_module(self, authenticated_client):
        response = post_json(authenticated_client, '/modules/9999/export_pdf', {})
        assert response.status_code == 404


class TestGenerate:
    """AI case drafts"""

    def test_generate_replaces_modules(self, authenticated_client, sample_case):
        docs = [
            {'title': 'Opening', 'summary': 'Intro', 'category': 'narrative', 'content': 'It was a dark night.'},
            {'title': 'Suspect A', 'summary': '', 'category': 'profile', 'content': 'Age 42.'},
        ]
        with mock.patch('casekit.api.generate_case_documents', return_value=docs):
            response = post_json(authenticated_client, f'/cases/{sample_case.id}/generate', {'prompt': 'storm'})
        assert response.status_code == 200

        case = json.loads(response.data)['case']
        assert [m['title'] for m in case['modules']] == ['Opening', 'Suspect A']
        assert case['modules'][0]['content']['body'] == 'It was a dark night.'
        assert case['modules'][0]['description'] == 'Intro'

    def test_generate_failure_keeps_modules(self, authenticated_client, sample_case):
        from casekit.services.openai_service import AIServiceError

        with mock.patch('casekit.api.generate_case_documents', side_effect=AIServiceError('quota')):
            response = post_json(authenticated_client, f'/cases/{sample_case.id}/generate', {})
        assert response.status_code == 502

        db.session.expire_all()
        assert Module.query.filter_by(case_id=sample_case.id).count() == 2


class TestExtraction:
    """Background text extraction"""

    def test_extract_requires_url(self, authenticated_client):
        response = post_json(authenticated_client, '/extract_start', {'url': 'not a url'})
        assert response.status_code == 400

    def test_status_requires_job_id(self, authenticated_client):
        response = authenticated_client.get('/extract_status')
        assert response.status_code == 400

    def test_extract_completes(self, authenticated_client):
        result = ExtractionResult('--- Page 1 ---\nHello', 'ocr', 1)
        with mock.patch('casekit.api.extract_text_from_url', return_value=result) as extract:
            response = post_json(authenticated_client, '/extract_start', {'url': 'https://x.test/scan.pdf'})
        assert response.status_code == 200
        assert extract.call_args.kwargs['min_length'] == 50

        job_id = json.loads(response.data)['job_id']
        status = json.loads(authenticated_client.get(f'/extract_status?job_id={job_id}').data)
        assert status['status'] == 'complete'
        assert status['progress'] == 100
        assert status['method'] == 'ocr'
        assert status['text'] == '--- Page 1 ---\nHello'

    def test_extract_uses_module_body(self, authenticated_client, sample_case):
        module = sample_case.modules[0]
        module.envelope = module.envelope.merged({'body': 'https://x.test/letter.png'})
        db.session.commit()

        result = ExtractionResult('Dear sir', 'ocr', 1)
        with mock.patch('casekit.api.extract_text_from_url', return_value=result) as extract:
            response = post_json(authenticated_client, '/extract_start', {'module_id': module.id})
        assert response.status_code == 200
        assert extract.call_args.args[0] == 'https://x.test/letter.png'

    def test_extract_failure_is_reported(self, authenticated_client):
        with mock.patch('casekit.api.extract_text_from_url', side_effect=ExtractionError('Unsupported file type: text/html')):
            response = post_json(authenticated_client, '/extract_start', {'url': 'https://x.test/page'})
        job_id = json.loads(response.data)['job_id']

        status = json.loads(authenticated_client.get(f'/extract_status?job_id={job_id}').data)
        assert status['status'] == 'error'
        assert status['error'] == 'Unsupported file type: text/html'

    def test_one_extraction_per_user(self, authenticated_client, test_user):
        db.session.add(ExtractionJob(id='job_running', user_id=test_user.id, source_url='https://x.test/a.pdf',
                                     status=JobStatus.PROCESSING.value))
        db.session.commit()

        response = post_json(authenticated_client, '/extract_start', {'url': 'https://x.test/b.pdf'})
        assert response.status_code == 409
        assert json.loads(response.data)['job_id'] == 'job_running'

    def test_start_locks_user_before_checking_jobs(self, authenticated_client, test_user):
        user_id = test_user.id
        calls = mock.Mock()
        calls.active.return_value = None

        result = ExtractionResult('text', 'text_layer', 1)
        with mock.patch('casekit.api.lock_user_row', calls.lock), \
                mock.patch('casekit.api.active_job_for', calls.active), \
                mock.patch('casekit.api.extract_text_from_url', return_value=result):
            response = post_json(authenticated_client, '/extract_start', {'url': 'https://x.test/b.pdf'})
        assert response.status_code == 200
        assert calls.mock_calls == [mock.call.lock(user_id), mock.call.active(user_id)]

    def test_stale_job_frees_slot(self, authenticated_client, test_user):
        old = datetime.now(timezone.utc) - timedelta(hours=1)
        db.session.add(ExtractionJob(id='job_stale', user_id=test_user.id, source_url='https://x.test/a.pdf',
                                     status=JobStatus.PROCESSING.value, heartbeat_at=old,
                                     created_at=old, updated_at=old))
        db.session.commit()

        result = ExtractionResult('text', 'text_layer', 1)
        with mock.patch('casekit.api.extract_text_from_url', return_value=result):
            response = post_json(authenticated_client, '/extract_start', {'url': 'https://x.test/b.pdf'})
        assert response.status_code == 200

        status = json.loads(authenticated_client.get('/extract_status?job_id=job_stale').data)
        assert status['status'] == 'error'
        assert status['error'] == 'Extraction timed out'

    def test_unknown_job(self, authenticated_client):
        response = authenticated_client.get('/extract_status?job_id=job_missing')
        assert response.status_code == 404
