"""RemoteBackend tests, served by the Flask app in-process."""

import os
import tempfile
import unittest
from urllib.parse import urlsplit

import app as app_module
from app import app
from constants import IMAGE_REF, LANGUAGE
from errors import RemoteStorageError
from remote_backend import RemoteBackend
from storage import StorageService

BIG = 'data:image/png;base64,' + 'A' * 600


class FlaskResponse:
    def __init__(self, response) -> None:
        self.status_code = response.status_code
        self._body = response.get_json(silent=True)

    def json(self):
        if self._body is None:
            raise ValueError('no JSON body')
        return self._body


class FlaskTransport:
    """Stands in for requests.Session, routing calls to a Flask test client."""

    def __init__(self, client) -> None:
        self.client = client
        self.calls = []

    def request(self, method, url, headers=None, json=None, params=None, timeout=None):
        path = urlsplit(url).path
        self.calls.append((method, path, params))
        kwargs = {'method': method, 'headers': headers or {}, 'query_string': params or {}}
        if json is not None:
            kwargs['json'] = json
        return FlaskResponse(self.client.open(path, **kwargs))


def make_question(question_id: str, **overrides) -> dict:
    question = {
        'id': question_id,
        'stem': '填入划横线部分最恰当的一项是',
        'options': ['一', '二', '三', '四'],
        'correctAnswer': 3,
        'category': LANGUAGE,
        'subCategory': '逻辑填空',
        'accuracy': 70,
        'materials': [],
        'mistakeCount': 1,
        'correctCount': 0,
        'createdAt': 1700000000000,
    }
    question.update(overrides)
    return question


class RemoteBackendTest(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.original_db_path = app_module.DB_PATH
        app_module.DB_PATH = os.path.join(self.temp_dir.name, 'remote.db')
        app_module.init_db()
        self.transport = FlaskTransport(app.test_client())
        self.backend = RemoteBackend('http://testserver/', http=self.transport)
        self.storage = StorageService(self.backend)
        result, self.ctx = self.storage.register('carol', 'pw', 'Carol')
        self.assertTrue(result['success'])

    def tearDown(self) -> None:
        app_module.DB_PATH = self.original_db_path
        self.temp_dir.cleanup()

    def test_register_duplicate_and_login(self) -> None:
        result, ctx = self.storage.register('carol', 'pw', 'Again')
        self.assertFalse(result['success'])
        self.assertEqual(result['message'], '用户名已存在')
        self.assertIsNone(ctx)

        _, ctx = self.storage.login('carol', 'pw')
        self.assertEqual(ctx.user_id, self.ctx.user_id)
        self.assertIsNone(self.storage.login('carol', 'bad')[1])

    def test_questions_and_images(self) -> None:
        self.storage.save_question(self.ctx, make_question('q1', materials=[BIG, 'text'], notesImage=BIG))
        stored = self.storage.get_question(self.ctx, 'q1')
        self.assertEqual(stored['materials'], [IMAGE_REF, 'text'])

        hydrated = self.storage.hydrate_question(self.ctx, stored)
        self.assertEqual(hydrated['materials'], [BIG, 'text'])
        self.assertEqual(hydrated['notesImage'], BIG)

        # Nothing to fetch for a document without sentinels.
        calls_before = len(self.transport.calls)
        plain = make_question('q2')
        self.assertIs(self.backend.hydrate_question_images(self.ctx.user_id, plain), plain)
        self.assertEqual(len(self.transport.calls), calls_before)

    def test_soft_delete_restore_and_hard_delete(self) -> None:
        self.storage.save_question(self.ctx, make_question('q1'))
        self.storage.delete_question(self.ctx, 'q1')
        self.assertEqual(self.storage.get_questions(self.ctx), [])
        self.assertEqual(len(self.storage.get_deleted_questions(self.ctx)), 1)

        self.storage.restore_question(self.ctx, 'q1')
        self.assertEqual([q['id'] for q in self.storage.get_questions(self.ctx)], ['q1'])

        self.storage.delete_question(self.ctx, 'q1', hard=True)
        self.assertIsNone(self.storage.get_question(self.ctx, 'q1'))

    def test_backup_restore_does_not_recount(self) -> None:
        self.storage.save_question(self.ctx, make_question('q1'))
        session = {'id': 's1', 'date': 1700000100000, 'details': [{'questionId': 'q1', 'isCorrect': False}]}
        self.storage.restore_backup(self.ctx, {'questions': [make_question('q1')], 'sessions': [session]})

        self.assertEqual(self.storage.get_question(self.ctx, 'q1')['mistakeCount'], 1)
        self.assertIn(('POST', '/api/sessions', {'skipStats': 'true'}), self.transport.calls)

    def test_practice_session_updates_counters(self) -> None:
        self.storage.save_question(self.ctx, make_question('q1'))
        session = {'id': 's1', 'date': 1700000100000, 'details': [{'questionId': 'q1', 'isCorrect': True}]}
        self.storage.save_session(self.ctx, session)
        self.assertEqual(self.storage.get_question(self.ctx, 'q1')['correctCount'], 1)
        self.assertEqual([s['id'] for s in self.storage.get_sessions(self.ctx)], ['s1'])

        self.storage.delete_session(self.ctx, 's1')
        self.assertEqual(self.storage.get_sessions(self.ctx), [])

    def test_save_user_returns_token(self) -> None:
        result = self.storage.save_user(self.ctx, {'nickname': 'Caz'})
        self.assertTrue(result['success'])
        self.assertEqual(self.ctx.user['nickname'], 'Caz')
        self.assertTrue(self.ctx.user['externalToken'])

    def test_unknown_user_raises(self) -> None:
        with self.assertRaises(RemoteStorageError) as caught:
            self.backend.get_questions('ghost')
        self.assertEqual(caught.exception.status_code, 401)


if __name__ == '__main__':
    unittest.main()
