"""
Tests for the job-query implementations.
"""

import subprocess
from unittest.mock import patch

import pytest

from spank_tunnel.cluster import SlurmJobQuery, StaticJobQuery
from spank_tunnel.cluster.slurm import (extract_alloc_node, extract_nodes,
                                        extract_user_id, parse_step_id)
from spank_tunnel.exceptions import JobQueryFailed
from spank_tunnel.types import BATCH_STEP_ID, JobRef

SCONTROL_TEXT = """JobId=1234 JobName=interactive
   UserId=alice(1001) GroupId=alice(1001) MCS_label=N/A
   JobState=RUNNING Reason=None Dependency=(null)
   Partition=gpu AllocNode:Sid=login01:48213
   ReqNodeList=(null) ExcNodeList=(null)
   NodeList=node[07-09]
   BatchHost=node07
"""

PENDING_TEXT = """JobId=1235 JobName=queued
   UserId=bob(1002) GroupId=bob(1002)
   JobState=PENDING Reason=Priority
   AllocNode:Sid=login02:1
   NodeList=(null)
"""


class TestExtractors:
    """Tests for scontrol field extraction."""

    def test_extract_nodes(self):
        assert extract_nodes(SCONTROL_TEXT) == "node[07-09]"

    def test_req_node_list_is_not_node_list(self):
        assert extract_nodes(PENDING_TEXT) is None

    def test_extract_alloc_node(self):
        assert extract_alloc_node(SCONTROL_TEXT) == "login01"

    def test_extract_user_id(self):
        assert extract_user_id(SCONTROL_TEXT) == 1001

    def test_parse_step_id(self):
        assert parse_step_id("3") == 3
        assert parse_step_id("batch") == BATCH_STEP_ID


class TestSlurmJobQuery:
    """Tests for SlurmJobQuery."""

    def test_current_job_ref(self):
        query = SlurmJobQuery({"SLURM_JOB_ID": "1234", "SLURM_STEP_ID": "2"})
        assert query.get_current_job_ref() == JobRef(1234, 2)

    def test_batch_step(self):
        query = SlurmJobQuery({"SLURM_JOBID": "1234", "SLURM_STEPID": "batch"})
        assert query.get_current_job_ref().is_batch

    @pytest.mark.parametrize("environ", [{}, {"SLURM_JOB_ID": "1"}, {"SLURM_JOB_ID": "x", "SLURM_STEP_ID": "0"}])
    def test_current_job_ref_failure(self, environ):
        with pytest.raises(JobQueryFailed):
            SlurmJobQuery(environ).get_current_job_ref()

    @patch("spank_tunnel.cluster.slurm.command_available", return_value=True)
    @patch("spank_tunnel.cluster.slurm.get_job_info", return_value=SCONTROL_TEXT)
    def test_job_fields(self, mock_info, mock_available):
        query = SlurmJobQuery({})
        ref = JobRef(1234, 0)
        assert query.get_allocated_node_expr(ref) == "node[07-09]"
        assert query.get_allocation_node(ref) == "login01"
        assert query.get_user_id(ref) == 1001
        mock_info.assert_called_with(1234)

    @patch("spank_tunnel.cluster.slurm.command_available", return_value=True)
    @patch("spank_tunnel.cluster.slurm.get_job_info", return_value=PENDING_TEXT)
    def test_no_allocated_nodes(self, mock_info, mock_available):
        with pytest.raises(JobQueryFailed, match="no allocated nodes"):
            SlurmJobQuery({}).get_allocated_node_expr(JobRef(1235, 0))

    @patch("spank_tunnel.cluster.slurm.command_available", return_value=True)
    @patch("spank_tunnel.cluster.slurm.get_job_info", return_value=SCONTROL_TEXT)
    def test_mismatched_job(self, mock_info, mock_available):
        with pytest.raises(JobQueryFailed, match="invalid"):
            SlurmJobQuery({}).get_allocated_node_expr(JobRef(999, 0))

    @patch("spank_tunnel.cluster.slurm.command_available", return_value=True)
    @patch(
        "spank_tunnel.cluster.slurm.get_job_info",
        side_effect=subprocess.CalledProcessError(1, ["scontrol"]),
    )
    def test_scontrol_failure(self, mock_info, mock_available):
        with pytest.raises(JobQueryFailed):
            SlurmJobQuery({}).get_user_id(JobRef(1, 0))

    @patch("spank_tunnel.cluster.slurm.command_available", return_value=False)
    def test_scontrol_missing(self, mock_available):
        with pytest.raises(JobQueryFailed):
            SlurmJobQuery({}).get_allocation_node(JobRef(1, 0))


class TestStaticJobQuery:
    """Tests for StaticJobQuery."""

    def test_answers(self):
        query = StaticJobQuery(JobRef(1, 0), node_expr="n[1-2]", alloc_node="login", user_id=7)
        ref = query.get_current_job_ref()
        assert query.get_allocated_node_expr(ref) == "n[1-2]"
        assert query.get_allocation_node(ref) == "login"
        assert query.get_user_id(ref) == 7
        assert query.calls[0] == "get_current_job_ref"

    def test_missing_values_fail(self):
        query = StaticJobQuery(None, node_expr=None)
        with pytest.raises(JobQueryFailed):
            query.get_current_job_ref()
        with pytest.raises(JobQueryFailed):
            query.get_allocated_node_expr(JobRef(1, 0))
