from vault import envelope
from vault.models import File, FileKeyGrant

from conftest import b64, load_user, unb64


def test_upload_creates_exactly_one_owner_grant(app, vault, alice):
    file_uuid, _ = vault.upload(alice)
    with app.app_context():
        owner = load_user(alice)
        file = File.query.filter_by(uuid=file_uuid).one()
        grants = FileKeyGrant.query.filter_by(file_id=file.id).all()
        assert len(grants) == 1
        assert grants[0].recipient_id == owner.id == file.owner_id
        assert grants[0].shared_by_id == owner.id


def test_owner_can_open_uploaded_file(vault, alice):
    file_uuid, _ = vault.upload(alice, b'quarterly numbers')
    assert vault.open_file(alice, file_uuid) == b'quarterly numbers'


def test_stranger_cannot_download(vault, alice, bob):
    file_uuid, _ = vault.upload(alice)
    response = vault.download(bob, file_uuid)
    assert response.status_code == 404


def test_shared_file_opens_for_recipient(vault, alice, bob):
    file_uuid, dek = vault.upload(alice, b'for bob')
    response = vault.share(alice, file_uuid, bob, dek)
    assert response.status_code == 201
    assert vault.open_file(bob, file_uuid) == b'for bob'


def test_upload_rejects_malformed_sealed_dek(client, alice):
    nonce, ciphertext = envelope.wrap_under_key(b'data', envelope.generate_key())
    response = client.post('/api/files/upload', headers=alice.headers, json={
        'file_name': 'a.txt',
        'enc_file_ciphertext': b64(ciphertext),
        'file_nonce': b64(nonce),
        'sealed_dek': 'not base64!!'
    })
    assert response.status_code == 400
    assert 'sealed_dek' in response.get_json()['error']


def test_share_twice_conflicts_unless_replacing(vault, alice, bob):
    file_uuid, dek = vault.upload(alice)
    assert vault.share(alice, file_uuid, bob, dek).status_code == 201

    response = vault.share(alice, file_uuid, bob, dek)
    assert response.status_code == 409

    response = vault.share(alice, file_uuid, bob, dek, replace=True)
    assert response.status_code == 201
    assert vault.open_file(bob, file_uuid) == b'attack at dawn'


def test_share_with_owner_conflicts(vault, alice):
    file_uuid, dek = vault.upload(alice)
    response = vault.share(alice, file_uuid, alice, dek)
    assert response.status_code == 409


def test_share_with_user_without_keys(vault, client, alice):
    dave = vault.register('dave', with_identity=False)
    file_uuid, _ = vault.upload(alice)
    response = client.post('/api/files/share', headers=alice.headers, json={
        'file_uuid': file_uuid,
        'recipient_uuid': dave.uuid,
        'sealed_dek': b64(b'sealed')
    })
    assert response.status_code == 404
    assert response.get_json()['error'] == "Recipient not found or hasn't set up encryption"


def test_recipient_can_reshare(vault, alice, bob, carol):
    file_uuid, dek = vault.upload(alice)
    vault.share(alice, file_uuid, bob, dek)

    # The DEK is unsealed on Bob's side and resealed for Carol.
    sealed = vault.download(bob, file_uuid).get_json()['sealed_dek']
    bobs_dek = envelope.unseal(unb64(sealed), bob.private_key)
    assert vault.share(bob, file_uuid, carol, bobs_dek).status_code == 201
    assert vault.open_file(carol, file_uuid) == b'attack at dawn'


def test_revoke_removes_access(vault, client, alice, bob):
    file_uuid, dek = vault.upload(alice)
    vault.share(alice, file_uuid, bob, dek)

    response = client.post('/api/files/revoke', headers=alice.headers, json={
        'file_uuid': file_uuid,
        'recipient_uuid': bob.uuid
    })
    assert response.status_code == 200
    assert response.get_json()['revoked'] is True
    assert vault.download(bob, file_uuid).status_code == 404
    assert vault.open_file(alice, file_uuid) == b'attack at dawn'


def test_revoked_user_cannot_reshare(vault, client, alice, bob, carol):
    file_uuid, dek = vault.upload(alice)
    vault.share(alice, file_uuid, bob, dek)
    client.post('/api/files/revoke', headers=alice.headers, json={
        'file_uuid': file_uuid,
        'recipient_uuid': bob.uuid
    })
    response = vault.share(bob, file_uuid, carol, dek)
    assert response.status_code == 404


def test_revoke_nothing_is_a_no_op(vault, client, alice, bob):
    file_uuid, _ = vault.upload(alice)
    response = client.post('/api/files/revoke', headers=alice.headers, json={
        'file_uuid': file_uuid,
        'recipient_uuid': bob.uuid
    })
    assert response.status_code == 200
    assert response.get_json()['revoked'] is False


def test_owner_grant_cannot_be_revoked(vault, client, alice, bob):
    file_uuid, dek = vault.upload(alice)
    vault.share(alice, file_uuid, bob, dek)
    response = client.post('/api/files/revoke', headers=bob.headers, json={
        'file_uuid': file_uuid,
        'recipient_uuid': alice.uuid
    })
    assert response.status_code == 400


def test_only_owner_or_issuer_may_revoke(vault, client, alice, bob, carol):
    file_uuid, dek = vault.upload(alice)
    vault.share(alice, file_uuid, bob, dek)
    vault.share(alice, file_uuid, carol, dek)

    response = client.post('/api/files/revoke', headers=carol.headers, json={
        'file_uuid': file_uuid,
        'recipient_uuid': bob.uuid
    })
    assert response.status_code == 404
    assert vault.open_file(bob, file_uuid) == b'attack at dawn'


def test_issuer_may_revoke_own_share(vault, client, alice, bob, carol):
    file_uuid, dek = vault.upload(alice)
    vault.share(alice, file_uuid, bob, dek)
    vault.share(bob, file_uuid, carol, dek)

    response = client.post('/api/files/revoke', headers=bob.headers, json={
        'file_uuid': file_uuid,
        'recipient_uuid': carol.uuid
    })
    assert response.get_json()['revoked'] is True
    assert vault.download(carol, file_uuid).status_code == 404


def test_bulk_share_reports_partial_failure(vault, client, alice, bob, carol):
    dave = vault.register('dave', with_identity=False)
    file_uuid, dek = vault.upload(alice)
    response = client.post('/api/files/share-bulk', headers=alice.headers, json={
        'file_uuid': file_uuid,
        'recipients': [
            {'recipient_uuid': bob.uuid, 'sealed_dek': b64(envelope.seal(dek, bob.public_key))},
            {'recipient_uuid': carol.uuid, 'sealed_dek': b64(envelope.seal(dek, carol.public_key))},
            {'recipient_uuid': dave.uuid, 'sealed_dek': b64(b'sealed')},
            {'recipientUuid': bob.uuid, 'sealed_dek': b64(b'sealed')},
        ]
    })
    assert response.status_code == 200
    data = response.get_json()
    assert data['shared_count'] == 2
    assert [entry['recipient_uuid'] for entry in data['failed']] == [dave.uuid, None]
    assert vault.open_file(carol, file_uuid) == b'attack at dawn'


def test_access_list(vault, client, alice, bob):
    file_uuid, dek = vault.upload(alice)
    vault.share(alice, file_uuid, bob, dek)

    response = client.get(f'/api/files/{file_uuid}/access-list', headers=bob.headers)
    assert response.status_code == 200
    data = response.get_json()
    assert data['owner']['uuid'] == alice.uuid
    assert [entry['user_uuid'] for entry in data['shared_with']] == [bob.uuid]
    assert data['shared_with'][0]['shared_by_uuid'] == alice.uuid


def test_shared_with_me_and_by_me(vault, client, alice, bob):
    file_uuid, dek = vault.upload(alice, filename='plan.txt')
    vault.share(alice, file_uuid, bob, dek)

    shared = client.get('/api/files/shared-with-me', headers=bob.headers).get_json()['files']
    assert [entry['file_uuid'] for entry in shared] == [file_uuid]
    assert envelope.unseal(unb64(shared[0]['sealed_dek']), bob.private_key) == dek

    issued = client.get('/api/files/shared-by-me', headers=alice.headers).get_json()['shares']
    assert issued == [{
        'file_uuid': file_uuid,
        'filename': 'plan.txt',
        'recipient_uuid': bob.uuid,
        'recipient_username': 'bob',
        'shared_at': issued[0]['shared_at'],
    }]

    listed = client.get('/api/files/', headers=bob.headers).get_json()['files']
    assert [(entry['file_uuid'], entry['is_owner']) for entry in listed] == [(file_uuid, False)]
