from conftest import auth


API = '/api/v1/production'


def _connected(socket_for, user_id=None):
    sio = socket_for(user_id)
    assert sio.is_connected('/ws')
    # Flush any initial events
    sio.get_received('/ws')
    return sio


def test_socket_connect_and_subscribe(socket_for, world):
    sio = socket_for(world.miner)
    connected = [pkt for pkt in sio.get_received('/ws') if pkt['name'] == 'connected']
    assert connected[0]['args'][0]['user_id'] == world.miner

    sio.emit('subscribe', {}, namespace='/ws')
    received = sio.get_received('/ws')
    assert any(pkt['name'] == 'subscribed' and pkt['args'][0]['room'] == f'user:{world.miner}' for pkt in received)


def test_socket_cannot_follow_another_user(socket_for, world):
    sio = _connected(socket_for, world.miner)
    sio.emit('subscribe', {'user_id': world.landlord}, namespace='/ws')
    errors = [pkt for pkt in sio.get_received('/ws') if pkt['name'] == 'error']
    assert errors and errors[0]['args'][0]['error'] == 'forbidden'

    anonymous = _connected(socket_for)
    anonymous.emit('subscribe', {'user_id': world.miner}, namespace='/ws')
    errors = [pkt for pkt in anonymous.get_received('/ws') if pkt['name'] == 'error']
    assert errors and errors[0]['args'][0]['error'] == 'unauthorized'

    unknown = _connected(socket_for, 9999)
    unknown.emit('subscribe', {}, namespace='/ws')
    assert any(pkt['name'] == 'error' for pkt in unknown.get_received('/ws'))


def test_ping_pong(socket_for):
    sio = _connected(socket_for)
    sio.emit('ping', {'n': 1}, namespace='/ws')
    received = sio.get_received('/ws')
    assert any(pkt['name'] == 'pong' and pkt['args'][0] == {'n': 1} for pkt in received)


def test_mutating_commands_push_updates(socket_for, client, engine, world, make_tool):
    sio = _connected(socket_for, world.miner)
    sio.emit('subscribe', {'user_id': world.miner}, namespace='/ws')
    sio.get_received('/ws')
    bystander = _connected(socket_for, world.landlord)
    bystander.emit('subscribe', {}, namespace='/ws')
    bystander.get_received('/ws')

    engine.grant(world.miner, 'grain', '10')
    tool = make_tool(world.miner)
    res = client.post(f'{API}/mining/self/start/', json={'land_id': world.miner_mine, 'tool_ids': [tool]},
                      headers=auth(world.miner))
    assert res.status_code == 201

    updates = [pkt for pkt in sio.get_received('/ws') if pkt['name'] == 'production_update']
    assert len(updates) == 1
    assert updates[0]['args'][0]['action'] == 'start'
    assert updates[0]['args'][0]['data']['status'] == 'active'
    assert not [pkt for pkt in bystander.get_received('/ws') if pkt['name'] == 'production_update']


def test_unsubscribed_clients_hear_nothing(socket_for, client, engine, world, make_tool):
    sio = _connected(socket_for, world.miner)
    sio.emit('subscribe', {'user_id': world.miner}, namespace='/ws')
    sio.emit('unsubscribe', {'user_id': world.miner}, namespace='/ws')
    received = sio.get_received('/ws')
    assert any(pkt['name'] == 'unsubscribed' for pkt in received)

    tool = make_tool(world.miner)
    client.post(f'{API}/mining/self/start/', json={'land_id': world.miner_mine, 'tool_ids': [tool]},
                headers=auth(world.miner))
    assert not [pkt for pkt in sio.get_received('/ws') if pkt['name'] == 'production_update']
