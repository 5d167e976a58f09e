"""
CLI 命令行入口 - 使用 Click 框架
"""

import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import click

from changefeed_sim import __version__
from changefeed_sim.config import ConfigError, load_config, save_config_template
from changefeed_sim.models.metrics import LaneDiffResult
from changefeed_sim.models.sim_config import SimulationConfig
from changefeed_sim.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


@click.group()
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    default="WARNING",
    help="日志级别",
)
@click.version_option(version=__version__, prog_name="changefeed-sim")
@click.pass_context
def cli(ctx: click.Context, log_level: str) -> None:
    """
    CDC 捕获方式模拟器 CLI

    在同一条源操作流上对比轮询、触发器和日志跟踪三种 CDC 方式。
    """
    # 配置日志
    configure_logging(log_level=log_level, json_format=False)

    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


@cli.command()
@click.argument("output_path", type=click.Path(), default="simulation.yaml")
def init(output_path: str) -> None:
    """
    生成配置文件模板

    示例:
        changefeed-sim init simulation.yaml
    """
    path = Path(output_path)

    if path.exists():
        click.confirm(f"文件 {output_path} 已存在，是否覆盖？", abort=True)

    save_config_template(output_path)
    click.echo(f"✓ 配置模板已生成: {output_path}")


@cli.command()
@click.argument("config_path", type=click.Path(exists=True))
def validate(config_path: str) -> None:
    """
    验证配置文件

    示例:
        changefeed-sim validate simulation.yaml
    """
    try:
        config = load_config(config_path)
        click.echo("✓ 配置验证通过")
        click.echo(f"  场景: {config.scenario.name} (seed={config.scenario.seed})")
        click.echo(f"  源操作数: {len(config.scenario.ops)}")
        click.echo(f"  初始表数: {len(config.scenario.tables)}")
        click.echo(f"  通道: {', '.join(m.value for m in config.lanes.enabled)}")
    except ConfigError as e:
        click.echo(f"✗ 配置错误: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"✗ 验证失败: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    required=True,
    help="配置文件路径",
)
@click.option("--seed", type=int, default=None, help="覆盖场景随机种子")
@click.option(
    "--generate",
    is_flag=True,
    default=False,
    help="忽略配置中的源操作，按种子生成随机场景",
)
@click.option("--json", "as_json", is_flag=True, default=False, help="以 JSON 输出结果")
def run(config: str, seed: Optional[int], generate: bool, as_json: bool) -> None:
    """
    运行模拟并校验各通道

    示例:
        changefeed-sim run -c simulation.yaml
        changefeed-sim run -c simulation.yaml --generate --seed 17 --json
    """
    try:
        cfg = _prepare_config(config, seed, generate)
        results, statuses = _run_simulation(cfg)
    except ConfigError as e:
        click.echo(f"✗ 配置错误: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"✗ 模拟失败: {e}", err=True)
        sys.exit(1)

    if as_json:
        payload = {
            "scenario": cfg.scenario.name,
            "seed": cfg.scenario.seed,
            "lanes": [
                {
                    "method": result.method,
                    "metrics": statuses[result.method]["metrics"],
                    "totals": result.totals.model_dump(),
                    "max_lag_ms": result.lag.max,
                }
                for result in results
            ],
        }
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return

    click.echo("CDC 模拟结果")
    click.echo("=" * 40)
    click.echo(f"场景: {cfg.scenario.name} (seed={cfg.scenario.seed})")
    click.echo(f"源操作: {len(cfg.scenario.ops)}")
    for result in results:
        metrics = statuses[result.method]["metrics"]
        icon = "✓" if result.totals.is_clean() else "✗"
        click.echo("")
        click.echo(f"[{result.method}] {icon}")
        click.echo(
            f"  产生: {metrics['produced']} | 消费: {metrics['consumed']} | 积压: {metrics['backlog']}"
        )
        click.echo(
            f"  延迟 P50/P95: {metrics['lag_p50']:.1f}/{metrics['lag_p95']:.1f} ms"
        )
        click.echo(
            f"  丢失删除: {metrics['missed_deletes']} | 写放大: {metrics['write_amplification']:.2f}"
        )
        click.echo(
            f"  缺失: {result.totals.missing} | 多余: {result.totals.extra} | 乱序: {result.totals.ordering}"
        )


@cli.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    required=True,
    help="配置文件路径",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(),
    required=True,
    help="NDJSON 输出路径",
)
@click.option("--seed", type=int, default=None, help="覆盖场景随机种子")
def export(config: str, output: str, seed: Optional[int]) -> None:
    """
    运行模拟并导出全部通道事件为 NDJSON

    示例:
        changefeed-sim export -c simulation.yaml -o events.ndjson
    """
    from changefeed_sim.core.engine import SimulationEngine
    from changefeed_sim.utils.export import export_ndjson

    try:
        cfg = _prepare_config(config, seed, False)
        engine = SimulationEngine(cfg)
        engine.run()
        count = export_ndjson(
            [(method.value, engine.events(method)) for method in engine.lanes],
            output,
        )
    except ConfigError as e:
        click.echo(f"✗ 配置错误: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"✗ 导出失败: {e}", err=True)
        sys.exit(1)

    click.echo(f"✓ 已导出 {count} 条事件: {output}")


# ============================================================================
# 执行函数
# ============================================================================

def _prepare_config(config_path: str, seed: Optional[int], generate: bool) -> SimulationConfig:
    """加载配置并应用命令行覆盖"""
    from changefeed_sim.scenario import generate_scenario

    cfg = load_config(config_path)
    if generate:
        scenario = generate_scenario(seed if seed is not None else cfg.scenario.seed)
        cfg = cfg.model_copy(update={"scenario": scenario})
    elif seed is not None:
        scenario = cfg.scenario.model_copy(update={"seed": seed})
        cfg = cfg.model_copy(update={"scenario": scenario})
    return cfg


def _run_simulation(
    cfg: SimulationConfig
) -> Tuple[List[LaneDiffResult], Dict[str, Dict[str, Any]]]:
    """运行到排空，返回校验结果和各通道状态"""
    from changefeed_sim.core.engine import SimulationEngine

    engine = SimulationEngine(cfg)
    results = engine.run()
    statuses = {
        method: status.model_dump(mode="json")
        for method, status in engine.get_status().items()
    }
    logger.debug("simulation_finished", lanes=list(statuses))
    return results, statuses


if __name__ == "__main__":
    cli()
