import json

from tracker import append_run, atomic_write


def test_append_run_creates_and_appends(tmp_path):
    tracker_file = tmp_path / 'tracker.json'

    assert append_run({'files_modified': ['a'], 'type': 'planning', 'description': 'first'},
                      tracker_path=str(tracker_file))
    assert append_run({'files_modified': ['b'], 'type': 'planning', 'description': 'second'},
                      tracker_path=str(tracker_file))

    data = json.loads(tracker_file.read_text())
    assert len(data['runs']) == 2
    assert data['runs'][-1]['files_modified'] == ['b']
    assert 'timestamp' in data['runs'][0]
    assert 'last_updated' in data


def test_append_run_reports_failure(tmp_path):
    tracker_file = tmp_path / 'tracker.json'
    tracker_file.write_text('{not json')
    assert append_run({'type': 'planning'}, tracker_path=str(tracker_file)) is False


def test_atomic_write_leaves_no_temp_files(tmp_path):
    target = tmp_path / 'nested' / 'report.json'
    atomic_write(str(target), '{"ok": true}')
    atomic_write(str(target), '{"ok": false}')
    assert json.loads(target.read_text()) == {'ok': False}
    assert [p.name for p in target.parent.iterdir()] == ['report.json']
