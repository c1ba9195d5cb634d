"""CLIエントリポイント

使い方:
    python -m lazsync.cli.main db init
    python -m lazsync.cli.main db stats
    python -m lazsync.cli.main merchant register -n "Shop" -e shop@example.com
    python -m lazsync.cli.main product list -m 1 [--status active]
    python -m lazsync.cli.main connection status [-m 1]
    python -m lazsync.cli.main connection auth-url -m 1
    python -m lazsync.cli.main connection refresh [-m 1]
    python -m lazsync.cli.main sync product --id 1 --action create
    python -m lazsync.cli.main sync bulk -m 1 --ids 1,2,3 --action stock_update
    python -m lazsync.cli.main sync logs -m 1 [--status failed]
    python -m lazsync.cli.main web --port 8080
"""

import logging
import os
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

# .envファイル読み込み
_project_root = Path(__file__).parent.parent.parent
_env_path = _project_root / "config" / ".env"
if _env_path.exists():
    load_dotenv(_env_path)

from lazsync.db.database import Database
from lazsync.errors import LazsyncError, ValidationError

console = Console()

ACTIONS = ["create", "update", "stock_update", "delete"]


def _open_db():
    """既存DBを開く（未作成ならNone）"""
    database = Database()
    if not os.path.exists(database.db_path):
        console.print("[red]DBが存在しません。先に `db init` を実行してください。[/red]")
        return None
    return database


def _init_lazada_client(database):
    """Lazadaクライアントを初期化（設定不足ならNone）"""
    from lazsync.config import LazadaConfig
    from lazsync.platforms.lazada import LazadaClient

    try:
        return LazadaClient(LazadaConfig.from_env(), database)
    except ValueError as e:
        console.print("[red]{}[/red]".format(e))
        return None


def _print_errors(e):
    console.print("[red]{}[/red]".format(e.message))
    if isinstance(e, ValidationError):
        for field, messages in e.errors.items():
            console.print("  [yellow]{}[/yellow]: {}".format(field, " / ".join(messages)))


# --- メイングループ ---

@click.group()
def cli():
    """Lazada商品同期ツール"""
    pass


# --- db コマンド ---

@cli.group()
def db():
    """データベース管理"""
    pass


@db.command("init")
def db_init():
    """テーブル作成"""
    database = Database()
    console.print(f"[bold]DB:[/bold] {database.db_path}")

    tables = database.init_tables()
    console.print(f"[green]✓[/green] テーブル作成: {', '.join(tables)}")
    console.print("[green]✓[/green] DB初期化完了")


@db.command("stats")
def db_stats():
    """DB統計を表示"""
    database = _open_db()
    if database is None:
        return

    stats = database.get_stats()

    table = Table(title="DB統計")
    table.add_column("テーブル", style="cyan")
    table.add_column("レコード数", justify="right")

    for key, value in stats.items():
        if not isinstance(value, dict):
            table.add_row(key, str(value))

    console.print(table)

    if stats.get("connections_by_status"):
        console.print("\n[bold]接続 (ステータス別):[/bold]")
        for status, count in stats["connections_by_status"].items():
            console.print(f"  {status}: {count}")


# --- merchant コマンド ---

@cli.group()
def merchant():
    """マーチャント管理"""
    pass


@merchant.command("register")
@click.option("-n", "--name", required=True, help="店舗名")
@click.option("-e", "--email", required=True, help="メールアドレス")
@click.option("--phone", default=None, help="電話番号")
@click.option("--password", prompt=True, hide_input=True,
              confirmation_prompt=True, help="パスワード（8文字以上）")
def merchant_register(name, email, phone, password):
    """マーチャントを登録してAPIトークンを発行"""
    from lazsync.auth.merchant_auth import MerchantAuth

    database = _open_db()
    if database is None:
        return

    try:
        result = MerchantAuth(database).register({
            "name": name,
            "email": email,
            "phone": phone,
            "password": password,
            "password_confirmation": password,
        })
    except LazsyncError as e:
        _print_errors(e)
        return

    console.print("[green]✓[/green] 登録完了: id={}".format(result["merchant"]["id"]))
    console.print("APIトークン（再表示できません）:")
    console.print("[cyan]{}[/cyan]".format(result["access_token"]))


# --- product コマンド ---

@cli.group()
def product():
    """商品管理"""
    pass


@product.command("list")
@click.option("-m", "--merchant-id", type=int, required=True, help="マーチャントID")
@click.option("-s", "--status", default=None,
              type=click.Choice(["active", "inactive", "draft"]), help="ステータス")
@click.option("-l", "--limit", default=20, help="表示件数（デフォルト: 20）")
def product_list(merchant_id, status, limit):
    """商品一覧を表示"""
    from lazsync.catalog.products import present_product

    database = _open_db()
    if database is None:
        return

    products = database.get_products(merchant_id, status=status, limit=limit)
    if not products:
        console.print("[yellow]商品がありません。[/yellow]")
        return

    table = Table(title="商品一覧")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("SKU", style="cyan")
    table.add_column("商品名", max_width=40)
    table.add_column("価格", justify="right", style="green")
    table.add_column("在庫", justify="right")
    table.add_column("状態")
    table.add_column("同期", style="yellow")

    for p in map(present_product, products):
        name = p["name"]
        name_display = (name[:37] + "...") if len(name) > 40 else name
        table.add_row(
            str(p["id"]),
            p["sku"],
            name_display,
            "{:,.2f}".format(p["price"]),
            "{} ({})".format(p["stock"], p["stock_status"]),
            p["status"],
            p["sync_status"],
        )

    console.print(table)
    console.print("[dim]{} 件表示[/dim]".format(len(products)))


# --- connection コマンド ---

@cli.group()
def connection():
    """Lazada接続管理"""
    pass


@connection.command("status")
@click.option("-m", "--merchant-id", type=int, default=None, help="マーチャントID")
def connection_status(merchant_id):
    """接続とトークン期限を表示"""
    from lazsync.platforms.lazada import needs_refresh

    database = _open_db()
    if database is None:
        return

    connections = database.get_connections(merchant_id=merchant_id)
    if not connections:
        console.print("[yellow]接続がありません。[/yellow]")
        return

    table = Table(title="プラットフォーム接続")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("マーチャント", justify="right")
    table.add_column("プラットフォーム", style="cyan")
    table.add_column("状態")
    table.add_column("有効期限")
    table.add_column("最終同期")

    for c in connections:
        status = c["status"]
        if status == "active":
            status_display = "[green]active[/green]"
            if needs_refresh(c):
                status_display += " [yellow](要更新)[/yellow]"
        else:
            status_display = "[red]{}[/red]".format(status)
        table.add_row(
            str(c["id"]),
            str(c["merchant_id"]),
            c["platform_name"],
            status_display,
            c.get("token_expires_at") or "-",
            c.get("last_sync_at") or "-",
        )

    console.print(table)


@connection.command("auth-url")
@click.option("-m", "--merchant-id", type=int, required=True, help="マーチャントID")
def connection_auth_url(merchant_id):
    """Lazada認証URLを表示"""
    database = _open_db()
    if database is None:
        return
    client = _init_lazada_client(database)
    if client is None:
        return

    console.print("ブラウザで以下のURLを開いてください:")
    console.print("[cyan]{}[/cyan]".format(client.build_authorization_url(merchant_id)))


@connection.command("refresh")
@click.option("-m", "--merchant-id", type=int, default=None, help="マーチャントID")
def connection_refresh(merchant_id):
    """アクティブな接続を検証（期限間近ならトークン更新）"""
    database = _open_db()
    if database is None:
        return
    client = _init_lazada_client(database)
    if client is None:
        return

    connections = [
        c for c in database.get_connections(merchant_id=merchant_id, status="active")
        if c["platform_name"] == client.platform_name
    ]
    if not connections:
        console.print("[yellow]アクティブな接続がありません。[/yellow]")
        return

    for c in connections:
        if client.validate_and_refresh(c):
            console.print("[green]✓[/green] id={} merchant={} 有効期限: {}".format(
                c["id"], c["merchant_id"], c.get("token_expires_at")))
        else:
            error = (c.get("connection_data") or {}).get("last_error", {})
            console.print("[red]✗[/red] id={} merchant={} {}".format(
                c["id"], c["merchant_id"], error.get("message", "")))


# --- sync コマンド ---

@cli.group()
def sync():
    """Lazada同期"""
    pass


@sync.command("product")
@click.option("--id", "product_id", type=int, required=True, help="商品ID")
@click.option("-a", "--action", required=True, type=click.Choice(ACTIONS),
              help="同期アクション")
def sync_product(product_id, action):
    """1商品を同期（リトライなしで即時実行）"""
    from lazsync.sync.product_sync import ProductSyncRunner

    database = _open_db()
    if database is None:
        return
    client = _init_lazada_client(database)
    if client is None:
        return

    runner = ProductSyncRunner(database, client)
    console.print("[bold]同期実行中...[/bold] product_id={} action={}".format(
        product_id, action))
    try:
        result = runner.run(product_id, action)
    except LazsyncError as e:
        _print_errors(e)
        return

    data = result.get("data") or {}
    console.print("[green]同期完了[/green]")
    if isinstance(data, dict) and data.get("item_id"):
        console.print("  item_id: {}".format(data["item_id"]))


@sync.command("bulk")
@click.option("-m", "--merchant-id", type=int, required=True, help="マーチャントID")
@click.option("--ids", required=True, help="商品ID（カンマ区切り）")
@click.option("-a", "--action", required=True, type=click.Choice(ACTIONS),
              help="同期アクション")
def sync_bulk(merchant_id, ids, action):
    """複数商品を並行同期（失敗時リトライあり）"""
    from lazsync.config import load_sync_settings
    from lazsync.sync.job_queue import SyncJobQueue
    from lazsync.sync.product_sync import ProductSyncRunner

    try:
        product_ids = [int(pid) for pid in ids.split(",") if pid.strip()]
    except ValueError:
        console.print("[red]--ids は整数のカンマ区切りで指定してください。[/red]")
        return

    database = _open_db()
    if database is None:
        return
    owned = {p["id"] for p in database.get_products_by_ids(merchant_id, product_ids)}
    missing = [pid for pid in product_ids if pid not in owned]
    if missing:
        console.print("[red]商品が見つかりません: {}[/red]".format(missing))
        return

    client = _init_lazada_client(database)
    if client is None:
        return

    queue = SyncJobQueue(ProductSyncRunner(database, client), **load_sync_settings())
    console.print("[bold]{}件の同期を実行中...[/bold]".format(len(product_ids)))
    try:
        results = queue.collect(queue.submit_bulk(product_ids, action))
    finally:
        queue.shutdown()

    table = Table(title="同期結果")
    table.add_column("商品ID", justify="right")
    table.add_column("結果")
    table.add_column("エラー", max_width=60)
    for r in results:
        ok = r["status"] == "success"
        table.add_row(
            str(r["product_id"]),
            "[green]success[/green]" if ok else "[red]failed[/red]",
            r["error"] or "",
        )
    console.print(table)


@sync.command("logs")
@click.option("-m", "--merchant-id", type=int, required=True, help="マーチャントID")
@click.option("-s", "--status", default=None,
              type=click.Choice(["success", "failed", "pending", "partial"]),
              help="ステータス")
@click.option("-l", "--limit", default=20, help="表示件数（デフォルト: 20）")
def sync_logs(merchant_id, status, limit):
    """同期ログを表示"""
    database = _open_db()
    if database is None:
        return

    logs = database.get_sync_logs(merchant_id, status=status, limit=limit)
    if not logs:
        console.print("[yellow]同期ログがありません。[/yellow]")
        return

    table = Table(title="同期ログ")
    table.add_column("日時", style="dim")
    table.add_column("アクション", style="cyan")
    table.add_column("商品ID", justify="right")
    table.add_column("結果")
    table.add_column("秒", justify="right")
    table.add_column("メッセージ", max_width=50)

    for log in logs:
        ok = log["status"] == "success"
        table.add_row(
            log["created_at"][:19],
            log["action_type"],
            str(log.get("product_id") or "-"),
            "[green]{}[/green]".format(log["status"]) if ok
            else "[red]{}[/red]".format(log["status"]),
            "{:.2f}".format(log["duration"] or 0),
            log.get("message") or "",
        )

    console.print(table)


# --- web コマンド ---

@cli.command("web")
@click.option("--host", default="127.0.0.1", help="バインドアドレス")
@click.option("--port", default=8080, help="ポート（デフォルト: 8080）")
@click.option("--debug", is_flag=True, help="デバッグモード")
def web(host, port, debug):
    """JSON APIサーバーを起動"""
    from lazsync.api.web import create_app

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    app = create_app()
    console.print(f"[bold]API:[/bold] http://{host}:{port}/api/v1")
    app.run(host=host, port=port, debug=debug)


# --- エントリポイント ---

def main():
    cli()


if __name__ == "__main__":
    main()
