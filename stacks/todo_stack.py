import os
from pathlib import Path

from aws_cdk import (
    BundlingOptions,
    CfnOutput,
    CustomResource,
    Duration,
    RemovalPolicy,
    Stack,
    aws_apigateway as apigw,
    aws_cloudwatch as cloudwatch,
    aws_cognito as cognito,
    aws_dynamodb as ddb,
    aws_lambda as _lambda,
    aws_logs as logs,
    custom_resources as cr,
)
from constructs import Construct

LAMBDA_DIR = Path(__file__).resolve().parents[1] / "lambda"
OWNER_INDEX_NAME = "OwnerIdIndex"
STATUS_INDEX_NAME = "StatusIndex"


class TodoStack(Stack):
    def __init__(self, scope: Construct, construct_id: str, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        stage_name = os.getenv("STAGE", "prod")
        data_retention_mode = os.getenv("DATA_RETENTION_MODE", "destroy").strip().lower()
        if data_retention_mode not in {"destroy", "retain"}:
            raise ValueError(
                "DATA_RETENTION_MODE must be 'destroy' or 'retain' (case-insensitive)"
            )
        auth_mode = os.getenv("TODO_AUTH_MODE", "jwt").strip().lower()
        if auth_mode not in {"jwt", "authorizer"}:
            raise ValueError("TODO_AUTH_MODE must be 'jwt' or 'authorizer' (case-insensitive)")
        # Dev-first default: delete stateful resources on teardown for fast iteration.
        stateful_removal_policy = (
            RemovalPolicy.DESTROY
            if data_retention_mode == "destroy"
            else RemovalPolicy.RETAIN
        )
        schema_version = "2026-10-01"
        # Bump to re-run both backfill jobs on the next deploy.
        backfill_version = os.getenv("TODO_BACKFILL_VERSION", "1")
        cors_origin = os.getenv("TODO_CORS_ORIGIN", "*")
        name_prefix = f"{construct_id}-{stage_name}"

        table = ddb.Table(
            self,
            "TodoTable",
            partition_key=ddb.Attribute(name="id", type=ddb.AttributeType.STRING),
            billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
            point_in_time_recovery=True,
            removal_policy=stateful_removal_policy,
        )
        table.add_global_secondary_index(
            index_name=OWNER_INDEX_NAME,
            partition_key=ddb.Attribute(name="ownerId", type=ddb.AttributeType.STRING),
            projection_type=ddb.ProjectionType.ALL,
        )
        table.add_global_secondary_index(
            index_name=STATUS_INDEX_NAME,
            partition_key=ddb.Attribute(name="status", type=ddb.AttributeType.STRING),
            projection_type=ddb.ProjectionType.ALL,
        )

        user_pool = cognito.UserPool(
            self,
            "TodoUserPool",
            user_pool_name=f"{name_prefix}-users",
            self_sign_up_enabled=True,
            sign_in_aliases=cognito.SignInAliases(email=True),
            auto_verify=cognito.AutoVerifiedAttrs(email=True),
            password_policy=cognito.PasswordPolicy(
                min_length=8,
                require_digits=True,
                require_lowercase=True,
                require_uppercase=True,
                require_symbols=True,
            ),
            account_recovery=cognito.AccountRecovery.EMAIL_ONLY,
            removal_policy=stateful_removal_policy,
        )
        user_pool_client = user_pool.add_client(
            "TodoUserPoolClient",
            auth_flows=cognito.AuthFlow(user_password=True, user_srp=True),
            generate_secret=False,
        )

        # Runtime dependencies (PyJWT) are installed next to the handlers at synth time.
        lambda_code = _lambda.Code.from_asset(
            str(LAMBDA_DIR),
            bundling=BundlingOptions(
                image=_lambda.Runtime.PYTHON_3_12.bundling_image,
                command=[
                    "bash",
                    "-c",
                    "pip install -r requirements.txt -t /asset-output && cp -au . /asset-output",
                ],
            ),
        )

        api_fn = _lambda.Function(
            self,
            "TodoApiHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="todo_handler.handler",
            code=lambda_code,
            timeout=Duration.seconds(10),
            environment={
                "TODO_TABLE_NAME": table.table_name,
                "TODO_OWNER_INDEX": OWNER_INDEX_NAME,
                "TODO_AUTH_MODE": auth_mode,
                "COGNITO_USER_POOL_ID": user_pool.user_pool_id,
                "COGNITO_CLIENT_ID": user_pool_client.user_pool_client_id,
                "TODO_CORS_ORIGIN": cors_origin,
                "TODO_SCHEMA_VERSION": schema_version,
            },
        )
        table.grant_read_write_data(api_fn)

        status_backfill_fn = _lambda.Function(
            self,
            "StatusBackfillHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="todo_backfill.status_handler",
            code=lambda_code,
            timeout=Duration.minutes(10),
            environment={"TODO_TABLE_NAME": table.table_name},
        )
        owner_backfill_fn = _lambda.Function(
            self,
            "OwnerBackfillHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="todo_backfill.owner_handler",
            code=lambda_code,
            timeout=Duration.minutes(10),
            environment={
                "TODO_TABLE_NAME": table.table_name,
                "TODO_LEGACY_OWNER_ID": "0",
            },
        )
        table.grant_read_write_data(status_backfill_fn)
        table.grant_read_write_data(owner_backfill_fn)

        # Explicit log groups so retention and the error metric filter exist at deploy time.
        log_groups: dict[str, logs.LogGroup] = {}
        for logical_id, fn in (
            ("TodoApiLogGroup", api_fn),
            ("StatusBackfillLogGroup", status_backfill_fn),
            ("OwnerBackfillLogGroup", owner_backfill_fn),
        ):
            log_groups[logical_id] = logs.LogGroup(
                self,
                logical_id,
                log_group_name=f"/aws/lambda/{fn.function_name}",
                retention=logs.RetentionDays.ONE_WEEK,
                removal_policy=stateful_removal_policy,
            )

        # Runs once at provisioning; a later deploy re-runs it only when the version changes.
        # The log group must exist first, or the invocation creates it and the stack conflicts.
        for name, fn in (("Status", status_backfill_fn), ("Owner", owner_backfill_fn)):
            provider = cr.Provider(
                self,
                f"{name}BackfillProvider",
                on_event_handler=fn,
            )
            backfill_resource = CustomResource(
                self,
                f"{name}BackfillResource",
                service_token=provider.service_token,
                properties={"BackfillVersion": backfill_version},
            )
            backfill_resource.node.add_dependency(log_groups[f"{name}BackfillLogGroup"])

        rest_api = apigw.RestApi(
            self,
            "TodoApi",
            rest_api_name=f"{name_prefix}-api",
            deploy_options=apigw.StageOptions(stage_name=stage_name),
            default_cors_preflight_options=apigw.CorsOptions(
                allow_origins=apigw.Cors.ALL_ORIGINS if cors_origin == "*" else [cors_origin],
                allow_methods=apigw.Cors.ALL_METHODS,
                allow_headers=["Content-Type", "Authorization"],
            ),
        )
        todos = rest_api.root.add_resource("todos")
        single_todo = todos.add_resource("{id}")
        integration = apigw.LambdaIntegration(api_fn)

        method_options: dict = {"authorization_type": apigw.AuthorizationType.NONE}
        if auth_mode == "authorizer":
            authorizer = apigw.CognitoUserPoolsAuthorizer(
                self,
                "TodoCognitoAuthorizer",
                cognito_user_pools=[user_pool],
            )
            method_options = {
                "authorizer": authorizer,
                "authorization_type": apigw.AuthorizationType.COGNITO,
            }
        for resource, http_method in (
            (todos, "GET"),
            (todos, "POST"),
            (single_todo, "GET"),
            (single_todo, "PUT"),
            (single_todo, "DELETE"),
        ):
            resource.add_method(http_method, integration, **method_options)

        logs.MetricFilter(
            self,
            "TodoApiFailureMetricFilter",
            log_group=log_groups["TodoApiLogGroup"],
            metric_namespace="TodoService",
            metric_name="ApiFailures",
            filter_pattern=logs.FilterPattern.string_value("$.outcome", "=", "failed"),
            metric_value="1",
        )
        cloudwatch.Alarm(
            self,
            "TodoApiFailuresAlarm",
            metric=cloudwatch.Metric(
                namespace="TodoService",
                metric_name="ApiFailures",
                statistic="Sum",
                period=Duration.minutes(5),
            ),
            threshold=1,
            evaluation_periods=1,
            datapoints_to_alarm=1,
        )

        CfnOutput(self, "ApiUrl", value=rest_api.url, description="Base URL of the todo API.")
        CfnOutput(
            self,
            "UserPoolId",
            value=user_pool.user_pool_id,
            description="Cognito User Pool ID",
        )
        CfnOutput(
            self,
            "UserPoolClientId",
            value=user_pool_client.user_pool_client_id,
            description="Cognito User Pool Client ID",
        )
        CfnOutput(self, "TableName", value=table.table_name)
        CfnOutput(self, "StatusBackfillFunctionName", value=status_backfill_fn.function_name)
        CfnOutput(self, "OwnerBackfillFunctionName", value=owner_backfill_fn.function_name)
