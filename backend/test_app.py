"""Server API tests (no external network required)."""

import os
import tempfile
import unittest
from unittest.mock import patch

import app as app_module
from app import app
from constants import IMAGE_REF, LOGIC

BIG_IMAGE = 'data:image/png;base64,' + 'A' * 600


def make_question(question_id: str, **overrides) -> dict:
    question = {
        'id': question_id,
        'stem': '下列哪项最能加强上述论证？',
        'options': ['甲', '乙', '丙', '丁'],
        'correctAnswer': 2,
        'category': LOGIC,
        'subCategory': '逻辑判断',
        'accuracy': 55,
        'materials': [],
        'mistakeCount': 1,
        'correctCount': 0,
        'createdAt': 1700000000000,
    }
    question.update(overrides)
    return question


class BackendApiTest(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.temp_db_path = os.path.join(self.temp_dir.name, 'test_server.db')
        self.original_db_path = app_module.DB_PATH
        app_module.DB_PATH = self.temp_db_path
        app_module.init_db()
        self.client = app.test_client()

    def tearDown(self) -> None:
        app_module.DB_PATH = self.original_db_path
        self.temp_dir.cleanup()

    def register(self, username: str = 'alice', password: str = 'secret') -> dict:
        response = self.client.post('/api/auth/register', json={
            'username': username,
            'password': password,
            'nickname': username.title(),
        })
        self.assertEqual(response.status_code, 200)
        return response.get_json()['user']

    def headers(self, user: dict) -> dict:
        return {'X-User-Id': user['id']}

    def test_health_endpoint(self) -> None:
        response = self.client.get('/api/health')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {'ok': True})

    def test_cors_header_present(self) -> None:
        origin = 'http://localhost:3000'
        response = self.client.get('/api/health', headers={'Origin': origin})
        self.assertIn(response.headers.get('Access-Control-Allow-Origin'), ('*', origin))

    def test_register_and_login(self) -> None:
        user = self.register()
        self.assertNotIn('password', user)
        self.assertTrue(user['externalToken'])

        duplicate = self.client.post('/api/auth/register', json={'username': 'alice', 'password': 'x'})
        self.assertEqual(duplicate.status_code, 400)
        self.assertEqual(duplicate.get_json()['message'], '用户名已存在')

        ok = self.client.post('/api/auth/login', json={'username': 'alice', 'password': 'secret'})
        self.assertEqual(ok.status_code, 200)
        self.assertEqual(ok.get_json()['user']['id'], user['id'])

        bad = self.client.post('/api/auth/login', json={'username': 'alice', 'password': 'nope'})
        self.assertEqual(bad.status_code, 401)
        self.assertFalse(bad.get_json()['success'])

    def test_register_requires_credentials(self) -> None:
        response = self.client.post('/api/auth/register', json={'username': '', 'password': ''})
        self.assertEqual(response.status_code, 400)

    def test_update_user_keeps_token_and_changes_password(self) -> None:
        user = self.register()
        response = self.client.put('/api/user', headers=self.headers(user), json={
            'nickname': 'Al',
            'password': 'new-secret',
        })
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['externalToken'], user['externalToken'])

        relogin = self.client.post('/api/auth/login', json={'username': 'alice', 'password': 'new-secret'})
        self.assertEqual(relogin.status_code, 200)
        self.assertEqual(relogin.get_json()['user']['nickname'], 'Al')

    def test_requests_without_known_user_are_rejected(self) -> None:
        self.assertEqual(self.client.get('/api/questions').status_code, 401)
        response = self.client.get('/api/questions', headers={'X-User-Id': 'ghost'})
        self.assertEqual(response.status_code, 401)

    def test_question_images_are_split_out_and_served_separately(self) -> None:
        user = self.register()
        question = make_question('q1', materials=[BIG_IMAGE, 'short text'], notesImage=BIG_IMAGE)
        save = self.client.post('/api/questions', headers=self.headers(user), json=question)
        self.assertEqual(save.status_code, 200)

        stored = self.client.get('/api/questions/q1', headers=self.headers(user)).get_json()
        self.assertEqual(stored['materials'], [IMAGE_REF, 'short text'])
        self.assertEqual(stored['notesImage'], IMAGE_REF)
        self.assertEqual(stored['userId'], user['id'])

        images = self.client.get('/api/questions/q1/images', headers=self.headers(user)).get_json()
        self.assertEqual(images['materials'], [BIG_IMAGE])
        self.assertEqual(images['notesImage'], BIG_IMAGE)

        # Re-saving the light document must not drop the stored images.
        resave = self.client.post('/api/questions', headers=self.headers(user), json=stored)
        self.assertEqual(resave.status_code, 200)
        images = self.client.get('/api/questions/q1/images', headers=self.headers(user)).get_json()
        self.assertEqual(images['materials'], [BIG_IMAGE])

    def test_questions_are_isolated_per_user(self) -> None:
        alice = self.register('alice')
        bob = self.register('bob')
        self.client.post('/api/questions', headers=self.headers(alice), json=make_question('q1'))

        self.assertEqual(self.client.get('/api/questions', headers=self.headers(bob)).get_json(), [])
        missing = self.client.get('/api/questions/q1', headers=self.headers(bob))
        self.assertEqual(missing.status_code, 404)

        overwrite = self.client.post('/api/questions', headers=self.headers(bob), json=make_question('q1'))
        self.assertEqual(overwrite.status_code, 403)

    def test_soft_then_hard_delete(self) -> None:
        user = self.register()
        self.client.post(
            '/api/questions',
            headers=self.headers(user),
            json=make_question('q1', materials=[BIG_IMAGE]),
        )

        soft = self.client.delete('/api/questions/q1?hard=false', headers=self.headers(user))
        self.assertEqual(soft.status_code, 200)
        stored = self.client.get('/api/questions/q1', headers=self.headers(user)).get_json()
        self.assertIn('deletedAt', stored)

        hard = self.client.delete('/api/questions/q1?hard=true', headers=self.headers(user))
        self.assertEqual(hard.status_code, 200)
        self.assertEqual(self.client.get('/api/questions/q1', headers=self.headers(user)).status_code, 404)

        conn = app_module.get_db_connection()
        try:
            remaining = conn.execute('SELECT COUNT(*) AS cnt FROM question_images').fetchone()['cnt']
        finally:
            conn.close()
        self.assertEqual(remaining, 0)

    def test_session_updates_counters_once(self) -> None:
        user = self.register()
        self.client.post('/api/questions', headers=self.headers(user), json=make_question('q1'))
        session = {
            'id': 's1',
            'date': 1700000500000,
            'questionIds': ['q1'],
            'score': 0,
            'totalDuration': 30,
            'details': [{'questionId': 'q1', 'userAnswer': 0, 'isCorrect': False, 'duration': 30}],
        }

        first = self.client.post('/api/sessions', headers=self.headers(user), json=session)
        self.assertTrue(first.get_json()['statsUpdated'])
        again = self.client.post('/api/sessions', headers=self.headers(user), json=session)
        self.assertFalse(again.get_json()['statsUpdated'])

        question = self.client.get('/api/questions/q1', headers=self.headers(user)).get_json()
        self.assertEqual(question['mistakeCount'], 2)
        self.assertIn('lastPracticedAt', question)

        sessions = self.client.get('/api/sessions', headers=self.headers(user)).get_json()
        self.assertEqual([s['id'] for s in sessions], ['s1'])

    def test_session_skip_stats(self) -> None:
        user = self.register()
        self.client.post('/api/questions', headers=self.headers(user), json=make_question('q1'))
        session = {
            'id': 's2',
            'date': 1700000500000,
            'questionIds': ['q1'],
            'details': [{'questionId': 'q1', 'userAnswer': 2, 'isCorrect': True, 'duration': 5}],
        }
        response = self.client.post('/api/sessions?skipStats=true', headers=self.headers(user), json=session)
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.get_json()['statsUpdated'])

        question = self.client.get('/api/questions/q1', headers=self.headers(user)).get_json()
        self.assertEqual(question['correctCount'], 0)

        deleted = self.client.delete('/api/sessions/s2', headers=self.headers(user))
        self.assertEqual(deleted.get_json()['deleted'], 1)

    def test_external_endpoints_require_token(self) -> None:
        response = self.client.post('/api/external/analyze', json={'stem': 'x'})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.get_json()['message'], 'Invalid Token / Unauthorized')

    @patch('app.analyze_external_question')
    def test_external_analyze(self, mock_analyze) -> None:
        mock_analyze.return_value = {'category': LOGIC, 'subCategory': '逻辑判断', 'miniAnalysis': '<p>ok</p>'}
        user = self.register()

        response = self.client.post(
            '/api/external/analyze',
            headers={'X-External-Token': user['externalToken']},
            json={'stem': '题干', 'options': ['A', 'B', 'C', 'D']},
        )
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertTrue(payload['success'])
        self.assertEqual(payload['category'], LOGIC)
        self.assertEqual(mock_analyze.call_args[0][0]['stem'], '题干')

    @patch('app.chat_with_question')
    def test_external_chat(self, mock_chat) -> None:
        mock_chat.return_value = {'reply': '选 C。'}
        user = self.register()
        response = self.client.post(
            '/api/external/chat',
            headers={'X-External-Token': user['externalToken']},
            json={'stem': '题干', 'options': [], 'history': [], 'newMessage': '为什么？'},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['reply'], '选 C。')

    def test_external_save_assigns_id(self) -> None:
        user = self.register()
        response = self.client.post(
            '/api/external/save',
            headers={'X-External-Token': user['externalToken']},
            json={'stem': '题干', 'options': ['A', 'B', 'C', 'D'], 'category': LOGIC},
        )
        self.assertEqual(response.status_code, 200)
        question_id = response.get_json()['id']

        stored = self.client.get(f'/api/questions/{question_id}', headers=self.headers(user)).get_json()
        self.assertEqual(stored['mistakeCount'], 0)
        self.assertEqual(stored['userId'], user['id'])


if __name__ == '__main__':
    unittest.main()
