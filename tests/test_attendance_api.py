from datetime import date


def test_index_shows_login_until_logged_in(client):
    response = client.get('/')
    assert response.status_code == 200
    assert b'Teacher Login' in response.data


def test_index_shows_form_after_login(logged_in):
    response = logged_in.get('/')
    assert response.status_code == 200
    assert b'Welcome, Asha!' in response.data
    assert b'id="classAttendance-SC-girls"' in response.data
    assert b'id="mdmAttendance-OTHER-boys"' in response.data


def test_login_requires_credentials_without_calling_service(client, service):
    response = client.post('/api/login', json={'username': 'teacher6a'})
    assert response.status_code == 400
    assert response.get_json()['detail'] == 'Username and password are required.'
    assert service.calls == []


def test_login_rejected(client):
    response = client.post('/api/login', json={'username': 'teacher6a', 'password': 'nope'})
    assert response.status_code == 401
    assert response.get_json()['detail'] == 'Invalid username or password.'


def test_login_with_unreachable_service(client, service):
    service.unavailable.add('login')
    response = client.post('/api/login', json={'username': 'teacher6a', 'password': 'secret'})
    assert response.status_code == 401
    assert response.get_json()['detail'] == 'Login failed. Check connection or URL.'


def test_login_opens_blank_form_for_today(client, service):
    response = client.post('/api/login', json={'username': 'teacher6a', 'password': 'secret'})
    state = response.get_json()
    assert state['className'] == '6A'
    assert state['date'] == '2024-03-01'
    assert state['isExistingEntry'] is False
    assert state['submitLabel'] == 'Submit New Entry'
    assert state['notification'] == {'type': 'info', 'message': 'Ready for new entry.'}
    for block in state['attendanceData'].values():
        for counts in block.values():
            assert list(counts.values()) == ['', '', '', '']
    for totals in state['totals'].values():
        assert totals == {'totalGirls': 0, 'totalBoys': 0, 'grandTotal': 0}
    assert service.calls[-1] == ('fetchData', '6A', date(2024, 3, 1))


def test_api_requires_login(client):
    response = client.get('/api/attendance')
    assert response.status_code == 401
    assert response.get_json()['status'] == 401


def test_keystrokes_update_value_focus_and_totals(logged_in):
    first = logged_in.post('/api/attendance/field', json={'field': 'classAttendance-SC-girls', 'value': '7'})
    assert first.get_json()['advanced'] is False

    second = logged_in.post('/api/attendance/field', json={'field': 'classAttendance-SC-girls', 'value': '75'})
    state = second.get_json()
    assert second.status_code == 200
    assert state['value'] == 75
    assert state['advanced'] is True
    assert state['focus'] == 'classAttendance-SC-boys'
    assert state['totals']['classAttendance']['totalGirls'] == 75
    assert state['totals']['classAttendance']['grandTotal'] == 75


def test_field_values_are_clamped(logged_in):
    state = logged_in.post('/api/attendance/field', json={'field': 'mdmAttendance-ST-girls', 'value': '250'}).get_json()
    assert state['value'] == 99
    state = logged_in.post('/api/attendance/field', json={'field': 'mdmAttendance-ST-girls', 'value': ''}).get_json()
    assert state['value'] == ''
    assert state['totals']['mdmAttendance']['totalGirls'] == 0


def test_very_long_digit_string_is_clamped(logged_in):
    response = logged_in.post('/api/attendance/field', json={'field': 'classAttendance-SC-girls', 'value': '9' * 5000})
    assert response.status_code == 200
    assert response.get_json()['value'] == 99


def test_out_of_order_keystrokes_keep_newest_value(logged_in):
    newer = logged_in.post('/api/attendance/field',
                           json={'field': 'classAttendance-SC-girls', 'value': '75', 'seq': 2}).get_json()
    assert newer['stale'] is False
    assert newer['seq'] == 2
    older = logged_in.post('/api/attendance/field',
                           json={'field': 'classAttendance-SC-girls', 'value': '7', 'seq': 1}).get_json()
    assert older['stale'] is True
    assert older['value'] == 75
    assert older['attendanceData']['classAttendance']['girls']['SC'] == 75
    assert older['fieldSeq'] == {'classAttendance-SC-girls': 2}
    state = logged_in.get('/api/attendance').get_json()
    assert state['attendanceData']['classAttendance']['girls']['SC'] == 75


def test_keystroke_seq_must_be_an_integer(logged_in):
    response = logged_in.post('/api/attendance/field',
                              json={'field': 'classAttendance-SC-girls', 'value': '7', 'seq': 'two'})
    assert response.status_code == 400


def test_bad_field_requests(logged_in):
    unknown = logged_in.post('/api/attendance/field', json={'field': 'classAttendance-GEN-girls', 'value': '3'})
    assert unknown.status_code == 400
    not_a_number = logged_in.post('/api/attendance/field', json={'field': 'classAttendance-SC-girls', 'value': 'x'})
    assert not_a_number.status_code == 400


def test_date_change_loads_existing_record(logged_in, service):
    service.records[('6A', '2024-03-04')] = {
        'classAttendance': {'girls': {'SC': 5, 'ST': None}, 'boys': {'OTHER': 6}},
        'mdmAttendance': None,
    }
    state = logged_in.post('/api/attendance/date', json={'date': '2024-03-04'}).get_json()
    assert state['applied'] is True
    assert state['date'] == '2024-03-04'
    assert state['isExistingEntry'] is True
    assert state['submitLabel'] == 'Update Entry'
    assert state['attendanceData']['classAttendance']['girls'] == {'SC': 5, 'ST': '', 'SEBC': '', 'OTHER': ''}
    assert state['totals']['classAttendance'] == {'totalGirls': 5, 'totalBoys': 6, 'grandTotal': 11}
    assert state['notification']['message'] == 'Existing data loaded.'


def test_date_fetch_failure_resets_form(logged_in, service):
    logged_in.post('/api/attendance/field', json={'field': 'classAttendance-SC-girls', 'value': '12'})
    service.unavailable.add('fetchData')
    state = logged_in.post('/api/attendance/date', json={'date': '2024-03-05'}).get_json()
    assert state['notification'] == {'type': 'error', 'message': 'Could not fetch data.'}
    assert state['attendanceData']['classAttendance']['girls']['SC'] == ''


def test_invalid_date(logged_in):
    response = logged_in.post('/api/attendance/date', json={'date': '01/03/2024'})
    assert response.status_code == 400
    assert response.get_json()['detail'] == 'Invalid date format, must be YYYY-MM-DD'


def test_submit_twice_becomes_update(logged_in, service):
    logged_in.post('/api/attendance/field', json={'field': 'classAttendance-SC-girls', 'value': '30'})
    first = logged_in.post('/api/attendance/submit').get_json()
    assert first['submitLabel'] == 'Update Entry'
    assert first['notification'] == {'type': 'success', 'message': 'Data saved successfully!'}
    second = logged_in.post('/api/attendance/submit')
    assert second.status_code == 200
    assert second.get_json()['isExistingEntry'] is True
    assert service.records[('6A', '2024-03-01')]['classAttendance']['girls']['SC'] == 30


def test_submit_rejected_by_service(logged_in, service):
    service.save_error = 'quota exceeded'
    logged_in.post('/api/attendance/field', json={'field': 'classAttendance-SC-girls', 'value': '75'})
    response = logged_in.post('/api/attendance/submit')
    body = response.get_json()
    assert response.status_code == 422
    assert body['detail'] == 'Error saving: quota exceeded'
    assert body['state']['attendanceData']['classAttendance']['girls']['SC'] == 75
    assert body['state']['notification']['message'] == 'Error saving: quota exceeded'


def test_submit_with_unreachable_service(logged_in, service):
    service.unavailable.add('saveData')
    response = logged_in.post('/api/attendance/submit')
    assert response.status_code == 502
    assert response.get_json()['detail'] == 'Error sending data. Check network connection.'


def test_clear(logged_in, service):
    logged_in.post('/api/attendance/field', json={'field': 'mdmAttendance-SC-boys', 'value': '15'})
    calls = len(service.calls)
    state = logged_in.post('/api/attendance/clear').get_json()
    assert state['attendanceData']['mdmAttendance']['boys']['SC'] == ''
    assert state['notification']['message'] == 'Fields cleared.'
    assert len(service.calls) == calls


def test_busy_session_refuses_submit(logged_in, form_of):
    form = form_of(logged_in)
    form.begin_fetch(date(2024, 3, 8))
    response = logged_in.post('/api/attendance/submit')
    assert response.status_code == 409
    assert response.get_json()['detail'] == 'Please wait: fetch in progress'
    edit = logged_in.post('/api/attendance/field', json={'field': 'classAttendance-SC-girls', 'value': '1'})
    assert edit.status_code == 409
