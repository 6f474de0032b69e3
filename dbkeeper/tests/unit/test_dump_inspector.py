from __future__ import annotations

from dbkeeper.services.dump_inspector import DumpInspector, count_value_tuples
from dbkeeper.services.strategies import parse_binlog_info


_DUMP = b"""-- MySQL dump 10.13  Distrib 8.0.36, for Linux (x86_64)
--
-- Position to start replication or point-in-time recovery from
--

-- CHANGE REPLICATION SOURCE TO SOURCE_LOG_FILE='binlog.000042', SOURCE_LOG_POS=1337;

SET @@GLOBAL.GTID_PURGED=/*!80000 '+'*/ '3e11fa47-71ca-11e1-9e33-c80aa9429562:1-5,
4f22ab58-71ca-11e1-9e33-c80aa9429562:1-9';

DROP TABLE IF EXISTS `customers`;
CREATE TABLE `customers` (
  `id` int NOT NULL,
  `name` varchar(64) DEFAULT NULL
) ENGINE=InnoDB;
INSERT INTO `customers` VALUES (1,'Ann (admin)'),(2,'O\\'Brien'),(3,'semi;colon),(x');
CREATE TABLE `empty_table` (
  `id` int NOT NULL
) ENGINE=InnoDB;
CREATE TABLE `we``ird` (
  `id` int NOT NULL
) ENGINE=InnoDB;
INSERT INTO `we``ird` VALUES (1),(2);
INSERT INTO `we``ird` VALUES (3);
-- Dump completed on 2026-03-31 12:00:00
"""


def _inspect(data: bytes, chunk_size: int) -> DumpInspector:
    inspector = DumpInspector()
    for start in range(0, len(data), chunk_size):
        inspector.feed(data[start:start + chunk_size])
    inspector.close()
    return inspector


def test_counts_rows_and_reads_coordinates() -> None:
    inspector = _inspect(_DUMP, 1 << 20)
    assert inspector.completed is True
    assert inspector.row_counts == {"customers": 3, "empty_table": 0, "we`ird": 3}
    marker = inspector.marker
    assert marker.binlog_file == "binlog.000042"
    assert marker.binlog_position == 1337
    assert marker.gtid_set == (
        "3e11fa47-71ca-11e1-9e33-c80aa9429562:1-5,4f22ab58-71ca-11e1-9e33-c80aa9429562:1-9"
    )


def test_results_do_not_depend_on_chunk_boundaries() -> None:
    whole = _inspect(_DUMP, 1 << 20)
    tiny = _inspect(_DUMP, 7)
    assert tiny.row_counts == whole.row_counts
    assert tiny.marker == whole.marker
    assert tiny.completed is True


def test_truncated_dump_is_not_completed() -> None:
    truncated = _DUMP.split(b"-- Dump completed")[0]
    assert _inspect(truncated, 4096).completed is False


def test_legacy_master_syntax() -> None:
    inspector = _inspect(b"-- CHANGE MASTER TO MASTER_LOG_FILE='mysql-bin.000007', MASTER_LOG_POS=154;\n", 64)
    assert inspector.marker.binlog_file == "mysql-bin.000007"
    assert inspector.marker.binlog_position == 154
    assert inspector.marker.gtid_set is None


def test_count_value_tuples_ignores_parentheses_in_strings() -> None:
    assert count_value_tuples(b"(1,'a(b'),(2,'c)d'),(3,'it\\'s (x)');") == 3
    assert count_value_tuples(b"(1,(2)),(3);") == 2


def test_parse_binlog_info_with_wrapped_gtid() -> None:
    marker = parse_binlog_info("binlog.000003\t8812\t3e11fa47-71ca:1-5,\n4f22ab58-71ca:1-9\n")
    assert marker.binlog_file == "binlog.000003"
    assert marker.binlog_position == 8812
    assert marker.gtid_set == "3e11fa47-71ca:1-5,4f22ab58-71ca:1-9"
    assert parse_binlog_info("").is_empty()
