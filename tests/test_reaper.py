"""Tests for stuck-session reaping and orphan reconciliation."""

import os
import time

import pytest

from conftest import FakeProcess

from auto_claude_kanban.reaper import StuckSessionReaper, pid_alive
from auto_claude_kanban.stages import STAGES, StageHandler
from auto_claude_kanban.supervisor import ActiveSessionEntry, SessionTable
from auto_claude_kanban.workflow import EXECUTE, REPLY, TESTING, WorkflowGraph


def _reaper(board, supervisor, settings, alive=True, now=None):
    return StuckSessionReaper(
        board, supervisor.table, settings,
        is_alive=lambda pid: alive,
        clock=(lambda: now) if now is not None else time.time,
        kill_grace=0.05)


def _start(board, supervisor, spawner, settings, process, key=EXECUTE,
           status='todo'):
    board.add_task('t1', status=status)
    handler = StageHandler(STAGES[key], board, supervisor, settings,
                           WorkflowGraph(local_testing=True))
    spawner.queue.append(process)
    return handler.dispatch('p1', board.get_task('t1'))


class TestSweep:
    def test_timed_out_session_is_killed_and_task_reset(
            self, board, supervisor, spawner, settings):
        process = FakeProcess(block=True)
        handle = _start(board, supervisor, spawner, settings, process)
        entry = supervisor.table.get('p1')
        now = entry.started_at + settings.session_timeout + 1

        reaped = _reaper(board, supervisor, settings, now=now).sweep()
        supervisor.wait(5)

        assert [e.session_id for e in reaped] == [handle.session_id]
        assert process.terminated
        assert not process.killed
        session = board.sessions[handle.session_id]
        assert session['status'] == 'error'
        assert 'timeout' in session['summary']
        assert board.tasks['t1']['status'] == 'todo'
        assert board.tasks['t1']['error_count'] == 1
        assert board.tasks['t1']['assigned_to'] is None
        assert len(board.events_of('session_error')) == 1
        assert len(board.events_of('session_end')) == 0
        assert len(supervisor.table) == 0

    def test_sigkill_when_sigterm_is_ignored(self, board, supervisor, spawner,
                                             settings):
        process = FakeProcess(block=True)
        process.ignore_term = True
        _start(board, supervisor, spawner, settings, process)
        entry = supervisor.table.get('p1')

        _reaper(board, supervisor, settings,
                now=entry.started_at + settings.session_timeout).sweep()
        supervisor.wait(5)

        assert process.terminated
        assert process.killed

    def test_dead_process_is_reaped_without_signals(self, board, supervisor,
                                                    spawner, settings):
        process = FakeProcess(block=True)
        _start(board, supervisor, spawner, settings, process)

        reaped = _reaper(board, supervisor, settings, alive=False).sweep()
        process.finish(1)
        supervisor.wait(5)

        assert len(reaped) == 1
        assert not process.terminated
        assert board.tasks['t1']['error_count'] == 1
        assert board.tasks['t1']['status'] == 'todo'

    def test_young_live_session_is_left_alone(self, board, supervisor,
                                              spawner, settings):
        process = FakeProcess(block=True)
        _start(board, supervisor, spawner, settings, process)

        assert _reaper(board, supervisor, settings).sweep() == []
        assert 'p1' in supervisor.table

        process.finish(0)
        supervisor.wait(5)

    def test_reaped_verdict_stage_returns_to_its_queue(
            self, board, supervisor, spawner, settings):
        process = FakeProcess(block=True)
        _start(board, supervisor, spawner, settings, process, key=TESTING,
               status='testing')
        entry = supervisor.table.get('p1')

        _reaper(board, supervisor, settings,
                now=entry.started_at + settings.session_timeout).sweep()
        supervisor.wait(5)

        assert board.tasks['t1']['status'] == 'testing'
        assert board.tasks['t1']['error_count'] == 1

    def test_reaped_reply_counts_a_reply_failure_only(
            self, board, supervisor, spawner, settings):
        process = FakeProcess(block=True)
        _start(board, supervisor, spawner, settings, process, key=REPLY,
               status='review')
        entry = supervisor.table.get('p1')

        _reaper(board, supervisor, settings,
                now=entry.started_at + settings.session_timeout).sweep()
        supervisor.wait(5)

        assert board.tasks['t1']['status'] == 'review'
        assert board.tasks['t1']['error_count'] == 0
        assert supervisor.table.reply_failures('t1') == 1
        assert len(board.events_of('session_error')) == 1

    def test_exited_process_is_left_to_its_monitor(self, board, settings):
        table = SessionTable(3)
        entry = ActiveSessionEntry(project_id='p1', task_id='t1',
                                   stage=EXECUTE, dispatch_status='todo',
                                   session_id='s1', process=FakeProcess(0))
        table.reserve(entry)
        reaper = StuckSessionReaper(board, table, settings,
                                    is_alive=lambda pid: False)

        assert reaper.sweep() == []
        assert table.get('p1') is entry
        assert board.task_updates == []
        assert board.events_of('session_error') == []


class TestOrphans:
    def test_orphan_execution_is_closed_and_task_restored(
            self, board, supervisor, settings):
        board.add_task('t1', status='in_progress', error_count=1)
        board.add_session('s-old', 'p1', 't1')
        reaper = _reaper(board, supervisor, settings)

        busy = reaper.reconcile_orphans()

        assert busy == set()
        assert board.sessions['s-old']['status'] == 'error'
        assert board.tasks['t1']['status'] == 'todo'
        assert board.tasks['t1']['error_count'] == 2
        assert len(board.events_of('session_error')) == 1

    def test_reconciliation_is_idempotent(self, board, supervisor, settings):
        board.add_task('t1', status='in_progress')
        board.add_session('s-old', 'p1', 't1', session_type=EXECUTE)
        reaper = _reaper(board, supervisor, settings)

        reaper.reconcile_orphans()
        updates = list(board.task_updates)
        events = list(board.events)
        reaper.reconcile_orphans()

        assert board.task_updates == updates
        assert board.events == events
        assert board.tasks['t1']['error_count'] == 1

    def test_task_that_moved_on_is_not_touched(self, board, supervisor,
                                               settings):
        board.add_task('t1', status='review')
        board.add_session('s-old', 'p1', 't1', session_type=EXECUTE)

        _reaper(board, supervisor, settings).reconcile_orphans()

        assert board.sessions['s-old']['status'] == 'error'
        assert board.tasks['t1']['status'] == 'review'
        assert board.task_updates == []

    def test_orphan_uses_recorded_stage(self, board, supervisor, settings):
        board.add_task('t1', status='testing')
        board.add_session('s-old', 'p1', 't1', session_type=TESTING)

        _reaper(board, supervisor, settings).reconcile_orphans()

        assert board.tasks['t1']['status'] == 'testing'
        assert board.tasks['t1']['error_count'] == 1

    def test_tracked_session_is_not_an_orphan(self, board, supervisor,
                                              spawner, settings):
        process = FakeProcess(block=True)
        handle = _start(board, supervisor, spawner, settings, process)

        busy = _reaper(board, supervisor, settings).reconcile_orphans()

        assert busy == {'p1'}
        assert board.sessions[handle.session_id]['status'] == 'active'

        process.finish(0)
        supervisor.wait(5)

    def test_failed_session_close_leaves_task_for_next_run(
            self, board, supervisor, settings):
        board.add_task('t1', status='in_progress')
        board.add_session('s-old', 'p1', 't1')
        board.fail['update_session'] = RuntimeError('down')

        _reaper(board, supervisor, settings).reconcile_orphans()

        assert board.tasks['t1']['status'] == 'in_progress'
        assert board.tasks['t1']['error_count'] == 0

    def test_board_outage_returns_no_busy_projects(self, board, supervisor,
                                                   settings):
        board.fail['list_sessions'] = RuntimeError('down')
        assert _reaper(board, supervisor, settings).run() == set()


def test_pid_alive_for_own_process():
    assert pid_alive(os.getpid()) is True


@pytest.mark.parametrize('error, expected', [
    (PermissionError, True),
    (ProcessLookupError, False),
])
def test_pid_alive_signal_errors(monkeypatch, error, expected):
    def fake_kill(pid, sig):
        raise error(pid)

    monkeypatch.setattr('os.kill', fake_kill)
    assert pid_alive(1) is expected

