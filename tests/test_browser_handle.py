import pytest

from browser_handle import BrowserHandle, NewPageChannel
from igr_errors import SessionLost


def test_pages_before_the_mark_are_ignored():
    channel = NewPageChannel()
    channel.publish('late-tab-from-record-1')
    mark = channel.mark()
    assert channel.take_after(mark) is None

    channel.publish('tab-for-record-2')
    channel.publish('another-tab')
    assert channel.take_after(mark) == 'tab-for-record-2'
    assert channel.take_after(mark) == 'another-tab'
    assert channel.take_after(mark) is None
    assert channel.drain() == ['late-tab-from-record-1']


def test_take_all_after_leaves_older_pages():
    channel = NewPageChannel()
    channel.publish('older')
    mark = channel.mark()
    channel.publish('document')
    channel.publish('popup')

    assert channel.take_all_after(mark) == ['document', 'popup']
    assert channel.take_all_after(mark) == []
    assert channel.drain() == ['older']


def test_unlaunched_handle_is_not_connected():
    handle = BrowserHandle(headless=True)
    assert not handle.is_connected()
    with pytest.raises(SessionLost):
        handle.ensure_connected()
    with pytest.raises(SessionLost):
        handle.current_url()


def test_close_is_idempotent():
    handle = BrowserHandle()
    handle.close()
    handle.close()
    assert handle.browser is None
