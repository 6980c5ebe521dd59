import os

import pytest
from sqlalchemy import or_
from sqlalchemy.exc import OperationalError

from vault import db
from vault.blobstore import get_blob_store
from vault.errors import AuthError
from vault.jobs import resume_erasures
from vault.models import (
    Account, File, FileKeyGrant, Folder, FolderFileKey, FolderKeyGrant, Identity,
    RecoveryToken, SecurityQuestion, Session, User, UserSettings, USER_ERASING,
)
from vault.services import erasure, lifecycle

from conftest import FailingDeleteStore, blob_path, load_user


class BrokenQuery:
    def delete(self, synchronize_session=None):
        raise OperationalError('DELETE FROM folder_key_grants', {}, Exception('database is locked'))


@pytest.fixture
def populated(app, vault, client, alice, bob, carol):
    """Alice owns files and folders, shares in both directions and has recovery data."""
    files = [vault.upload(alice, f'file {i}'.encode()) for i in range(3)]
    vault.share(alice, files[0][0], bob, files[0][1])

    bobs_file, bobs_dek = vault.upload(bob, b'bob keeps this')
    vault.share(bob, bobs_file, alice, bobs_dek)
    vault.share(alice, bobs_file, carol, bobs_dek)

    alices_folder, alices_key = vault.create_folder(alice)
    vault.add_to_folder(alice, alices_folder, files[1][0], files[1][1], alices_key)
    vault.share_folder(alice, alices_folder, bob, alices_key)

    bobs_folder, bobs_key = vault.create_folder(bob, name='Shared with Alice')
    vault.share_folder(bob, bobs_folder, alice, bobs_key)
    vault.add_to_folder(alice, bobs_folder, files[2][0], files[2][1], bobs_key)

    client.patch('/api/settings/', headers=alice.headers, json={'trash_retention_days': 10})
    client.post('/api/settings/security-questions', headers=alice.headers, json={
        'question': 'What was the name of your first pet?',
        'answer': 'Biscuit'
    })
    questions = client.post('/api/recovery/questions', json={'email': alice.email}).get_json()['questions']
    client.post('/api/recovery/verify', json={
        'email': alice.email,
        'answers': [{'question_uuid': questions[0]['question_uuid'], 'answer': 'Biscuit'}]
    })

    with app.app_context():
        alice_id = load_user(alice).id
    return {
        'alice_id': alice_id,
        'files': [file_uuid for file_uuid, _ in files],
        'bobs_file': bobs_file,
        'bobs_folder': bobs_folder,
    }


def residual_rows(user_id, email):
    owned_files = [file.id for file in File.query.filter_by(owner_id=user_id)]
    owned_folders = [folder.id for folder in Folder.query.filter_by(owner_id=user_id)]
    return {
        'files': len(owned_files),
        'folders': len(owned_folders),
        'file_key_grants': FileKeyGrant.query.filter(or_(
            FileKeyGrant.file_id.in_(owned_files),
            FileKeyGrant.recipient_id == user_id,
            FileKeyGrant.shared_by_id == user_id)).count(),
        'folder_key_grants': FolderKeyGrant.query.filter(or_(
            FolderKeyGrant.folder_id.in_(owned_folders),
            FolderKeyGrant.recipient_id == user_id,
            FolderKeyGrant.shared_by_id == user_id)).count(),
        'folder_file_keys': FolderFileKey.query.filter(or_(
            FolderFileKey.file_id.in_(owned_files),
            FolderFileKey.folder_id.in_(owned_folders))).count(),
        'security_questions': SecurityQuestion.query.filter_by(user_id=user_id).count(),
        'recovery_tokens': RecoveryToken.query.filter_by(identifier=email).count(),
        'sessions': Session.query.filter_by(user_id=user_id).count(),
        'account': Account.query.filter_by(user_id=user_id).count(),
        'identity': Identity.query.filter_by(user_id=user_id).count(),
        'user_settings': UserSettings.query.filter_by(user_id=user_id).count(),
        'user': User.query.filter_by(id=user_id).count(),
    }


def test_erasure_leaves_no_rows_behind(app, vault, client, alice, bob, carol, populated):
    response = client.delete('/api/settings/account', headers=alice.headers)
    assert response.status_code == 200
    report = response.get_json()
    assert report['completed'] is True
    assert report['partial_failure'] is False
    assert report['files_found'] == 3
    assert report['blobs_deleted'] == 3

    with app.app_context():
        assert all(count == 0 for count in residual_rows(populated['alice_id'], alice.email).values())

    for file_uuid in populated['files']:
        assert not os.path.exists(blob_path(app, alice, file_uuid))

    # Bob's own data survives; Alice's contributions to it do not.
    assert vault.open_file(bob, populated['bobs_file']) == b'bob keeps this'
    assert vault.download(carol, populated['bobs_file']).status_code == 404
    folder = client.get(f"/api/folders/{populated['bobs_folder']}", headers=bob.headers).get_json()
    assert folder['files'] == []

    assert client.get('/api/files/', headers=alice.headers).status_code == 401
    assert client.post('/api/login', json={'email': alice.email, 'password': 'CorrectHorse9!Battery'}).status_code == 401


def test_failed_blob_delete_is_reported_but_metadata_is_gone(app, client, alice, populated):
    failing_file = populated['files'][1]
    app.extensions['blob_store'] = FailingDeleteStore(
        app.config['UPLOAD_FOLDER'], fail_keys=[f'{alice.uuid}/{failing_file}']
    )

    response = client.delete('/api/settings/account', headers=alice.headers)
    assert response.status_code == 200
    report = response.get_json()
    assert report['completed'] is True
    assert report['partial_failure'] is True
    assert report['blobs_deleted'] == 2
    assert report['blob_failures'] == 1
    assert report['failures'][0]['step'] == 'delete_blobs'
    assert report['failures'][0]['target'] == failing_file

    with app.app_context():
        assert all(count == 0 for count in residual_rows(populated['alice_id'], alice.email).values())


def test_erasing_user_is_locked_out(app, vault, client, alice, bob, populated):
    with app.app_context():
        caller = load_user(alice)
        User.query.filter_by(id=caller.id).update({'status': USER_ERASING})
        db.session.commit()
        with pytest.raises(AuthError):
            lifecycle.list_files(caller)

    assert client.get('/api/files/', headers=alice.headers).status_code == 401
    # Nobody can share with a user that is going away.
    file_uuid, dek = vault.upload(bob)
    assert vault.share(bob, file_uuid, alice, dek).status_code == 404


def test_failed_metadata_step_rolls_back_and_can_resume(app, client, alice, monkeypatch, populated):
    build_steps = erasure._metadata_steps

    def steps_with_failure(user_id, email):
        steps = build_steps(user_id, email)
        return steps[:3] + [('folder_key_grants', BrokenQuery())] + steps[4:]

    monkeypatch.setattr(erasure, '_metadata_steps', steps_with_failure)
    with app.app_context():
        report = erasure.erase_account(load_user(alice))
        assert report.completed is False
        assert report.failed_step == 'folder_key_grants'
        assert File.query.filter_by(owner_id=populated['alice_id']).count() == 3
        assert load_user(alice).status == USER_ERASING

    assert client.get('/api/files/', headers=alice.headers).status_code == 401

    monkeypatch.undo()
    with app.app_context():
        report = erasure.erase_account(load_user(alice))
        assert report.completed is True
        assert all(count == 0 for count in residual_rows(populated['alice_id'], alice.email).values())


def test_interrupted_erasure_is_finished_by_scheduled_job(app, client, alice, monkeypatch, populated):
    build_steps = erasure._metadata_steps

    def steps_with_failure(user_id, email):
        steps = build_steps(user_id, email)
        return steps[:3] + [('folder_key_grants', BrokenQuery())] + steps[4:]

    monkeypatch.setattr(erasure, '_metadata_steps', steps_with_failure)
    response = client.delete('/api/settings/account', headers=alice.headers)
    assert response.status_code == 500
    assert response.get_json()['failed_step'] == 'folder_key_grants'
    assert client.post('/api/login', json={'email': alice.email, 'password': 'CorrectHorse9!Battery'}).status_code == 401

    monkeypatch.undo()
    resume_erasures(app)

    with app.app_context():
        assert all(count == 0 for count in residual_rows(populated['alice_id'], alice.email).values())
        assert User.query.filter_by(status=USER_ERASING).count() == 0


def test_file_created_during_erasure_is_removed(app, alice, monkeypatch, populated):
    delete_blobs = erasure._delete_blobs
    calls = []

    def delete_blobs_then_late_upload(user_id, report, handled):
        delete_blobs(user_id, report, handled)
        if not calls:
            get_blob_store().put_object(f'{alice.uuid}/late-upload', b'late')
            db.session.add(File(uuid='late-upload', owner_id=user_id, filename='late.txt',
                                blob_pointer=f'{alice.uuid}/late-upload', size_bytes=4,
                                content_nonce=b'\x00' * 12))
            db.session.commit()
        calls.append(user_id)

    monkeypatch.setattr(erasure, '_delete_blobs', delete_blobs_then_late_upload)
    with app.app_context():
        report = erasure.erase_account(load_user(alice))
        assert report.completed is True
        assert report.files_found == 4
        assert report.blobs_deleted == 4
        assert all(count == 0 for count in residual_rows(populated['alice_id'], alice.email).values())

    assert not os.path.exists(blob_path(app, alice, 'late-upload'))
