# app.py - Quart (async) front for the SwarmBoard connection managers
import argparse
import base64
import binascii
import logging  # for hypercorn logging
import os
import sys  # for stderr logging

from quart import Quart, jsonify, request

from swarmboard.categories import DEFAULT_CATEGORY
from swarmboard.clients import get_available_clients
from swarmboard.config import get_data_path, load_config
from swarmboard.context import AppContext
from swarmboard.errors import CategoryError, ConfigurationError, NotConnected, SwarmBoardError
from swarmboard.hashing import fetch_torrent_payload, parse_magnet_uri, parse_torrent_payload
from swarmboard.history import JsonHistory

app = Quart(__name__)

config = load_config()

# --- LOGGING CONFIGURATION (NOISY LIBS SILENCED) ---
# Configure root logger
logging.basicConfig(
    level=getattr(logging, str(config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO),
    format='[%(asctime)s] [%(name)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    stream=sys.stderr
)

# Silence noisy libraries
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("hpack").setLevel(logging.WARNING)
logging.getLogger("apscheduler").setLevel(logging.WARNING)
logging.getLogger("tzlocal").setLevel(logging.WARNING)

if __name__ != '__main__':
    logger = logging.getLogger('hypercorn.error')
    app.logger.handlers = logger.handlers
    app.logger.setLevel(logging.root.level)

context = AppContext(config, history=JsonHistory(get_data_path(config) / "history.json"))
context.build_managers()


@app.before_serving
async def startup():
    await context.start()
    app.logger.info(f"SwarmBoard started with {len(context.registry)} client(s)")


@app.after_serving
async def shutdown():
    await context.shutdown()
    app.logger.info("SwarmBoard stopped")


# --- ERROR MAPPING ---

@app.errorhandler(NotConnected)
async def handle_not_connected(e):
    return jsonify({'error': str(e)}), 503


@app.errorhandler(CategoryError)
async def handle_category_error(e):
    return jsonify({'error': str(e)}), 400


@app.errorhandler(ConfigurationError)
async def handle_configuration_error(e):
    return jsonify({'error': str(e)}), 400


@app.errorhandler(SwarmBoardError)
async def handle_backend_error(e):
    app.logger.error(f"Backend error: {e}")
    return jsonify({'error': str(e)}), 502


def _manager_or_404(instance_id):
    manager = context.get_manager(instance_id)
    if manager is None:
        return None, (jsonify({'error': f'Unknown client {instance_id}'}), 404)
    return manager, None


# --- CLIENT ROUTES ---

@app.route('/clients', methods=['GET'])
async def list_clients():
    return jsonify({
        'clients': [m.status() for m in context.registry.get_all()],
        'available': get_available_clients(),
    })


@app.route('/clients/<instance_id>/data', methods=['GET'])
async def client_data(instance_id):
    manager, error = _manager_or_404(instance_id)
    if error:
        return error
    return jsonify(await manager.fetch_data())


@app.route('/clients/<instance_id>/stats', methods=['GET'])
async def client_stats(instance_id):
    manager, error = _manager_or_404(instance_id)
    if error:
        return error
    raw = await manager.get_stats()
    return jsonify({
        'metrics': manager.extract_metrics(raw),
        'network': manager.get_network_status(raw),
        'status': manager.status(),
    })


@app.route('/clients/<instance_id>/sync', methods=['POST'])
async def client_sync(instance_id):
    manager, error = _manager_or_404(instance_id)
    if error:
        return error
    if not manager.is_connected():
        raise NotConnected(f"{manager.display_name} not connected")
    return jsonify({'report': await manager.on_connect_sync(context.categories)})


ITEM_ACTIONS = ('pause', 'resume', 'stop', 'recheck', 'reannounce')


@app.route('/clients/<instance_id>/items/<hash_val>/<action>', methods=['POST'])
async def client_item_action(instance_id, hash_val, action):
    manager, error = _manager_or_404(instance_id)
    if error:
        return error
    if action not in ITEM_ACTIONS:
        return jsonify({'error': f'Unknown action {action}'}), 400
    await getattr(manager, action)(hash_val)
    return jsonify({'status': 'success'})


@app.route('/clients/<instance_id>/items/<hash_val>', methods=['DELETE'])
async def client_item_remove(instance_id, hash_val):
    manager, error = _manager_or_404(instance_id)
    if error:
        return error
    delete_files = request.args.get('deleteFiles', 'false').lower() == 'true'
    await manager.remove_download(hash_val, delete_files)
    return jsonify({'status': 'success'})


@app.route('/clients/<instance_id>/items/<hash_val>/category', methods=['POST'])
async def client_item_category(instance_id, hash_val):
    manager, error = _manager_or_404(instance_id)
    if error:
        return error
    data = await request.get_json() or {}
    category = data.get('category') or DEFAULT_CATEGORY
    await manager.set_category_or_label(hash_val, category_name=category)
    return jsonify({'status': 'success', 'category': category})


@app.route('/clients/<instance_id>/items/<hash_val>/files', methods=['GET'])
async def client_item_files(instance_id, hash_val):
    manager, error = _manager_or_404(instance_id)
    if error:
        return error
    return jsonify({'files': await manager.get_files(hash_val)})


@app.route('/clients/<instance_id>/add', methods=['POST'])
async def client_add(instance_id):
    """
    Adds one item. The body names exactly one source: 'magnet' (magnet or
    ed2k link), 'url' (a .torrent to download first) or 'torrent' (base64
    .torrent payload). Optional: categoryName, savePath, start, username.
    """
    manager, error = _manager_or_404(instance_id)
    if error:
        return error
    data = await request.get_json() or {}
    options = {k: data[k] for k in ('categoryName', 'savePath', 'start', 'username') if k in data}

    if data.get('magnet'):
        uri = data['magnet']
        if uri.startswith('magnet:'):
            options.update({k: v for k, v in parse_magnet_uri(uri).items() if v})
        hash_val = await manager.add_magnet(uri, options)
    elif data.get('url') or data.get('torrent'):
        if data.get('url'):
            app.logger.info(f"Downloading torrent from {data['url']}")
            payload = await fetch_torrent_payload(data['url'])
        else:
            try:
                payload = base64.b64decode(data['torrent'], validate=True)
            except (binascii.Error, ValueError):
                return jsonify({'error': 'torrent must be base64'}), 400
        options.update(parse_torrent_payload(payload))
        hash_val = await manager.add_torrent_raw(payload, options)
    else:
        return jsonify({'error': 'magnet, url or torrent required'}), 400

    return jsonify({'status': 'success', 'hash': hash_val or options.get('hash')})


# --- CATEGORY ROUTES ---

@app.route('/categories', methods=['GET'])
async def list_categories():
    return jsonify({
        'categories': {c.name: c.to_dict() for c in context.categories.get_all()},
        'pathWarnings': context.categories.get_path_warnings(),
    })


@app.route('/categories', methods=['POST'])
async def create_category():
    data = await request.get_json() or {}
    category = await context.categories.create(
        data.get('name'),
        path=data.get('path'),
        comment=data.get('comment', ''),
        color=data.get('color'),
        priority=data.get('priority', 0),
        path_mappings=data.get('pathMappings'),
    )
    return jsonify({'status': 'success', 'category': {category.name: category.to_dict()}}), 201


@app.route('/categories/<name>', methods=['PATCH'])
async def update_category(name):
    data = await request.get_json() or {}
    if data.get('newName') and data['newName'] != name:
        await context.categories.rename(name, data['newName'])
        name = data['newName']
    results = await context.categories.update(
        name,
        path=data.get('path'),
        comment=data.get('comment'),
        color=data.get('color'),
        priority=data.get('priority'),
        path_mappings=data.get('pathMappings'),
    )
    category = context.categories.get_by_name(name)
    return jsonify({'status': 'success', 'category': {name: category.to_dict()}, 'verification': results})


@app.route('/categories/<name>', methods=['DELETE'])
async def delete_category(name):
    await context.categories.delete(name)
    return jsonify({'status': 'success'})


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", default=None, type=int)
    args = parser.parse_args()

    # Priority: CLI arg > PORT env var > hardcoded default (5000)
    port = args.port or int(os.getenv("PORT", 5000))

    app.run(host=args.host, port=port, debug=False, use_reloader=False)
