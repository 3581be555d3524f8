# swarmboard/normalize.py - Backend item dicts to the unified download shape
from urllib.parse import urlparse


def _tracker_host(url):
    if not url:
        return None
    try:
        return urlparse(url).hostname or url
    except ValueError:
        return url


def _ratio(uploaded, size):
    return round(uploaded / size, 3) if size else 0


def _eta(value):
    # Backends use negative or huge values for "unknown"
    if value is None or value < 0 or value >= 8640000:
        return None
    return int(value)


def _base(item, client_type, instance_id):
    return {
        'hash': item.get('hash', '').lower(),
        'clientType': client_type,
        'instanceId': instance_id,
        # Raw Transmission items carry tracker dicts under the same key
        'trackers': [t for t in item.get('trackers') or [] if isinstance(t, str)],
        'trackersDetailed': item.get('trackersDetailed', []),
        'peersDetailed': item.get('peersDetailed', []),
    }


# --- DELUGE ---

def map_deluge_state(deluge_state: str) -> str:
    if not deluge_state:
        return "unknown"
    s = deluge_state.lower()
    if "checking" in s or "allocating" in s or "moving" in s:
        return "checking"
    if "downloading" in s:
        return "downloading"
    if "seeding" in s:
        return "seeding"
    if "paused" in s:
        return "paused"
    if "queued" in s:
        return "queued"
    if "error" in s:
        return "error"
    return "unknown"


def normalize_deluge(item, instance_id=None) -> dict:
    size = item.get('total_wanted', 0) or 0
    result = _base(item, 'deluge', instance_id)
    result.update({
        'name': item.get('name'),
        'size': size,
        'downloaded': item.get('total_done', 0),
        # Deluge reports 0-100
        'progress': (item.get('progress') or 0) / 100,
        'downloadSpeed': item.get('download_payload_rate', 0),
        'uploadSpeed': item.get('upload_payload_rate', 0),
        'uploadTotal': item.get('total_uploaded', 0),
        'ratio': item.get('ratio') if item.get('ratio', -1) >= 0 else _ratio(item.get('total_uploaded', 0), size),
        'eta': _eta(item.get('eta')),
        'status': map_deluge_state(item.get('state')),
        'message': item.get('message') or None,
        'category': item.get('label') or None,
        'directory': item.get('download_location') or item.get('save_path'),
        'addedAt': item.get('time_added'),
        'tracker': item.get('tracker_host') or None,
        'seeds': item.get('num_seeds', 0),
        'peers': item.get('num_peers', 0),
        'isMultiFile': (item.get('num_files') or 1) > 1,
    })
    return result


def deluge_trackers_and_peers(data) -> dict:
    trackers = data.get('trackers') or []
    tracker_status = data.get('tracker_status') or ''
    detailed = [
        {
            'url': t.get('url'),
            'tier': t.get('tier', 0),
            'status': tracker_status if i == 0 else '',
            'message': t.get('message', ''),
        }
        for i, t in enumerate(trackers)
    ]
    peers = [
        {
            'address': p.get('ip'),
            'client': p.get('client'),
            'country': p.get('country'),
            'progress': p.get('progress', 0),
            'downloadSpeed': p.get('down_speed', 0),
            'uploadSpeed': p.get('up_speed', 0),
        }
        for p in data.get('peers') or []
    ]
    return {'trackersDetailed': detailed, 'trackers': [t['url'] for t in detailed], 'peersDetailed': peers}


# --- QBITTORRENT ---

QBIT_STATE_MAP = {
    'downloading': 'downloading', 'forcedDL': 'downloading', 'metaDL': 'downloading',
    'forcedMetaDL': 'downloading', 'stalledDL': 'downloading',
    'uploading': 'seeding', 'forcedUP': 'seeding', 'stalledUP': 'seeding',
    'pausedDL': 'paused', 'pausedUP': 'paused', 'stoppedDL': 'paused', 'stoppedUP': 'paused',
    'queuedDL': 'queued', 'queuedUP': 'queued',
    'checkingDL': 'checking', 'checkingUP': 'checking', 'checkingResumeData': 'checking',
    'allocating': 'checking', 'moving': 'checking',
    'error': 'error', 'missingFiles': 'error',
}


def normalize_qbittorrent(item, instance_id=None) -> dict:
    size = item.get('size', 0) or 0
    result = _base(item, 'qbittorrent', instance_id)
    result.update({
        'name': item.get('name'),
        'size': size,
        'downloaded': item.get('completed', item.get('downloaded', 0)),
        'progress': item.get('progress', 0),
        'downloadSpeed': item.get('dlspeed', 0),
        'uploadSpeed': item.get('upspeed', 0),
        'uploadTotal': item.get('uploaded', 0),
        'ratio': round(item.get('ratio', 0), 3),
        'eta': _eta(item.get('eta')),
        'status': QBIT_STATE_MAP.get(item.get('state'), 'unknown'),
        'category': item.get('category') or None,
        'directory': item.get('save_path'),
        'addedAt': item.get('added_on'),
        'tracker': _tracker_host(item.get('tracker')),
        'seeds': item.get('num_seeds', 0),
        'peers': item.get('num_leechs', 0),
        'isMultiFile': None,
    })
    return result


QBIT_TRACKER_STATUS = {0: 'disabled', 1: 'not contacted', 2: 'working', 3: 'updating', 4: 'not working'}


def qbittorrent_trackers_and_peers(data) -> dict:
    # DHT/PeX/LSD pseudo trackers are listed with urls like "** [DHT] **"
    trackers = [t for t in data.get('trackers') or [] if not str(t.get('url', '')).startswith('**')]
    detailed = [
        {
            'url': t.get('url'),
            'tier': t.get('tier', 0),
            'status': QBIT_TRACKER_STATUS.get(t.get('status'), 'unknown'),
            'message': t.get('msg', ''),
            'seeds': t.get('num_seeds'),
            'peers': t.get('num_peers'),
        }
        for t in trackers
    ]
    peers = [
        {
            'address': address,
            'client': p.get('client'),
            'country': p.get('country_code'),
            'progress': p.get('progress', 0),
            'downloadSpeed': p.get('dl_speed', 0),
            'uploadSpeed': p.get('up_speed', 0),
        }
        # keys are "ip:port" or "[v6]:port"
        for address, p in (data.get('peers') or {}).items()
    ]
    return {'trackersDetailed': detailed, 'trackers': [t['url'] for t in detailed], 'peersDetailed': peers}


# --- TRANSMISSION ---

TRANSMISSION_STATUS = {
    0: 'paused', 1: 'checking', 2: 'checking', 3: 'queued',
    4: 'downloading', 5: 'queued', 6: 'seeding',
}


def normalize_transmission(item, instance_id=None) -> dict:
    size = item.get('sizeWhenDone', item.get('totalSize', 0)) or 0
    labels = item.get('labels') or []
    trackers = item.get('trackers') or []
    status = TRANSMISSION_STATUS.get(item.get('status'), 'unknown')
    if item.get('error'):
        status = 'error'
    result = _base(item, 'transmission', instance_id)
    result.update({
        'name': item.get('name'),
        'size': size,
        'downloaded': size - (item.get('leftUntilDone') or 0),
        'progress': item.get('percentDone', 0),
        'downloadSpeed': item.get('rateDownload', 0),
        'uploadSpeed': item.get('rateUpload', 0),
        'uploadTotal': item.get('uploadedEver', 0),
        'ratio': item.get('uploadRatio') if (item.get('uploadRatio') or 0) >= 0 else 0,
        'eta': _eta(item.get('eta')),
        'status': status,
        'message': item.get('errorString') or None,
        'category': labels[0] if labels else None,
        'directory': item.get('downloadDir'),
        'addedAt': item.get('addedDate'),
        'tracker': _tracker_host(trackers[0].get('announce')) if trackers else None,
        'seeds': item.get('peersSendingToUs', 0),
        'peers': item.get('peersGettingFromUs', 0),
        'isMultiFile': (item.get('fileCount') or 1) > 1,
    })
    return result


def transmission_trackers_and_peers(item) -> dict:
    detailed = [
        {
            'url': t.get('announce'),
            'tier': t.get('tier', 0),
            'status': 'working' if t.get('lastAnnounceSucceeded') else 'not working',
            'message': t.get('lastAnnounceResult', ''),
            'seeds': t.get('seederCount'),
            'peers': t.get('leecherCount'),
        }
        for t in item.get('trackerStats') or []
    ]
    peers = [
        {
            'address': f"{p.get('address')}:{p.get('port')}",
            'client': p.get('clientName'),
            'progress': p.get('progress', 0),
            'downloadSpeed': p.get('rateToClient', 0),
            'uploadSpeed': p.get('rateToPeer', 0),
        }
        for p in item.get('peers') or []
    ]
    return {'trackersDetailed': detailed, 'trackers': [t['url'] for t in detailed], 'peersDetailed': peers}


# --- RTORRENT ---

def map_rtorrent_state(item) -> str:
    if item.get('hashing'):
        return 'checking'
    if not item.get('open') or not item.get('active'):
        return 'paused'
    if item.get('complete'):
        return 'seeding'
    return 'downloading'


def normalize_rtorrent(item, instance_id=None) -> dict:
    size = item.get('size', 0) or 0
    completed = item.get('completed', 0) or 0
    down_rate = item.get('downRate', 0) or 0
    trackers = [t for t in item.get('trackers') or [] if isinstance(t, str)]
    status = map_rtorrent_state(item)
    result = _base(item, 'rtorrent', instance_id)
    result.update({
        'name': item.get('name'),
        'size': size,
        'downloaded': completed,
        'progress': completed / size if size else 0,
        'downloadSpeed': down_rate,
        'uploadSpeed': item.get('upRate', 0),
        'uploadTotal': item.get('upTotal', 0),
        # rTorrent reports ratio * 1000
        'ratio': round((item.get('ratio') or 0) / 1000, 3),
        'eta': int((size - completed) / down_rate) if status == 'downloading' and down_rate else None,
        'status': status,
        'message': item.get('message') or None,
        'category': item.get('label') or None,
        'directory': item.get('directory'),
        'addedAt': item.get('addedAt') or None,
        'tracker': _tracker_host(trackers[0]) if trackers else None,
        'seeds': item.get('seeds', 0),
        'peers': item.get('peers', 0),
        'isMultiFile': bool(item.get('multiFile')),
    })
    return result


def rtorrent_trackers_and_peers(data) -> dict:
    # Rows follow TRACKER_FIELDS / PEER_FIELDS in clients/rtorrent.py
    detailed = [
        {
            'url': url,
            'tier': group,
            'status': 'working' if enabled else 'disabled',
            'message': '',
            'seeds': seeds,
            'peers': leechers,
        }
        for url, enabled, group, seeds, leechers in data.get('trackers') or []
    ]
    peers = [
        {
            'address': f"{address}:{port}",
            'client': client,
            'progress': (percent or 0) / 100,
            'downloadSpeed': down_rate,
            'uploadSpeed': up_rate,
        }
        for address, port, client, percent, down_rate, up_rate in data.get('peers') or []
    ]
    return {
        'trackersDetailed': detailed,
        # Disabled trackers are listed but never announced to
        'trackers': [t['url'] for t in detailed if t['status'] == 'working'],
        'peersDetailed': peers,
    }


# --- AMULE ---

AMULE_STATUS = {
    'downloading': 'downloading', 'waiting': 'queued', 'hashing': 'checking',
    'completing': 'checking', 'complete': 'seeding', 'paused': 'paused',
    'stopped': 'paused', 'error': 'error',
}


def normalize_amule(item, instance_id=None) -> dict:
    size = item.get('size', 0) or 0
    completed = item.get('completed', 0) or 0
    speed = item.get('speed', 0) or 0
    result = _base(item, 'amule', instance_id)
    result.update({
        'name': item.get('name'),
        'size': size,
        'downloaded': completed,
        'progress': completed / size if size else 0,
        'downloadSpeed': speed,
        'uploadSpeed': item.get('uploadSpeed', 0),
        'uploadTotal': item.get('uploaded', 0),
        'ratio': _ratio(item.get('uploaded', 0), size),
        'eta': int((size - completed) / speed) if speed else None,
        'status': AMULE_STATUS.get(str(item.get('status', '')).lower(), 'unknown'),
        'category': item.get('categoryName'),
        'categoryId': item.get('category', 0),
        'directory': item.get('path'),
        'addedAt': item.get('addedAt'),
        'tracker': None,
        'seeds': item.get('sourcesTransferring', 0),
        'peers': item.get('sources', 0),
        'isMultiFile': False,
    })
    return result


def normalize_amule_upload(entry, instance_id=None) -> dict:
    return {
        'hash': (entry.get('hash') or '').lower(),
        'name': entry.get('name'),
        'address': entry.get('address'),
        'client': entry.get('client'),
        'uploadSpeed': entry.get('uploadSpeed', 0),
        'uploadTotal': entry.get('uploaded', 0),
        'clientType': 'amule',
        'instanceId': instance_id,
    }


# --- UPLOADS ---

def extract_uploads(downloads) -> list:
    """Peers we are actively sending to, flattened across all items."""
    uploads = []
    for download in downloads:
        for peer in download.get('peersDetailed') or []:
            if (peer.get('uploadSpeed') or 0) <= 0:
                continue
            uploads.append({
                'hash': download['hash'],
                'name': download.get('name'),
                'address': peer.get('address'),
                'client': peer.get('client'),
                'uploadSpeed': peer['uploadSpeed'],
                'clientType': download.get('clientType'),
                'instanceId': download.get('instanceId'),
            })
    return uploads
