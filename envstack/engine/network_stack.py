"""Network stack: VPC, subnets and NAT egress."""

from typing import Dict, List

from cdktf import S3Backend, TerraformOutput, TerraformStack
from constructs import Construct

from cdktf_cdktf_provider_aws.provider import AwsProvider
from cdktf_cdktf_provider_aws.vpc import Vpc
from cdktf_cdktf_provider_aws.subnet import Subnet
from cdktf_cdktf_provider_aws.internet_gateway import InternetGateway
from cdktf_cdktf_provider_aws.nat_gateway import NatGateway
from cdktf_cdktf_provider_aws.eip import Eip
from cdktf_cdktf_provider_aws.route_table import RouteTable, RouteTableRoute
from cdktf_cdktf_provider_aws.route_table_association import RouteTableAssociation

from ..models.config import InfraModel, Stage
from .state import configure_backend


class NetworkStack(TerraformStack):
    """
    Isolated VPC for one environment.

    Creates:
    - VPC tagged for ownership by the cluster
    - One public and one private subnet per availability zone
    - Internet gateway and NAT egress for the private subnets
    """

    def __init__(self, scope: Construct, id: str, infra: InfraModel):
        super().__init__(scope, id)

        self.infra = infra

        AwsProvider(
            self,
            "aws",
            region=infra.region,
            default_tags=[{"tags": infra.tags}],
        )

        S3Backend(self, **configure_backend(infra.state_location(Stage.NETWORK)))

        self.vpc = self._create_vpc()
        self.subnets = self._create_subnets()
        self.internet_gateway = self._create_internet_gateway()
        self.nat_gateways = self._create_nat_gateways()
        self._create_route_tables()

        self._create_outputs()

    def _tags(self, name: str, **extra: str) -> Dict[str, str]:
        return {
            "Name": name,
            self.infra.ownership_tag: "shared",
            **extra,
        }

    def _create_vpc(self) -> Vpc:
        return Vpc(
            self,
            "vpc",
            cidr_block=self.infra.network.vpc_cidr,
            enable_dns_hostnames=True,
            enable_dns_support=True,
            tags=self._tags(f"{self.infra.cluster_name}-vpc"),
        )

    def _create_subnets(self) -> Dict[str, List[Subnet]]:
        """Create public and private subnets, one of each per zone."""
        subnets: Dict[str, List[Subnet]] = {"public": [], "private": []}
        network = self.infra.network

        for i, (cidr, az) in enumerate(zip(network.public_subnets, network.availability_zones)):
            subnets["public"].append(
                Subnet(
                    self,
                    f"public_subnet_{i}",
                    vpc_id=self.vpc.id,
                    cidr_block=cidr,
                    availability_zone=az,
                    map_public_ip_on_launch=True,
                    tags=self._tags(
                        f"{self.infra.cluster_name}-public-{az}",
                        **{"kubernetes.io/role/elb": "1"},
                    ),
                )
            )

        for i, (cidr, az) in enumerate(zip(network.private_subnets, network.availability_zones)):
            subnets["private"].append(
                Subnet(
                    self,
                    f"private_subnet_{i}",
                    vpc_id=self.vpc.id,
                    cidr_block=cidr,
                    availability_zone=az,
                    map_public_ip_on_launch=False,
                    tags=self._tags(
                        f"{self.infra.cluster_name}-private-{az}",
                        **{"kubernetes.io/role/internal-elb": "1"},
                    ),
                )
            )

        return subnets

    def _create_internet_gateway(self) -> InternetGateway:
        return InternetGateway(
            self,
            "igw",
            vpc_id=self.vpc.id,
            tags={"Name": f"{self.infra.cluster_name}-igw"},
        )

    def _create_nat_gateways(self) -> List[NatGateway]:
        """One NAT gateway in the first zone, or one per zone."""
        public_subnets = self.subnets["public"]
        if self.infra.network.single_nat_gateway:
            public_subnets = public_subnets[:1]

        nat_gateways = []
        for i, public_subnet in enumerate(public_subnets):
            eip = Eip(
                self,
                f"nat_eip_{i}",
                domain="vpc",
                tags={"Name": f"{self.infra.cluster_name}-nat-eip-{i}"},
            )

            nat_gateways.append(
                NatGateway(
                    self,
                    f"nat_gateway_{i}",
                    allocation_id=eip.id,
                    subnet_id=public_subnet.id,
                    tags={"Name": f"{self.infra.cluster_name}-nat-{i}"},
                    depends_on=[self.internet_gateway],
                )
            )

        return nat_gateways

    def _create_route_tables(self) -> None:
        public_rt = RouteTable(
            self,
            "public_rt",
            vpc_id=self.vpc.id,
            route=[
                RouteTableRoute(
                    cidr_block="0.0.0.0/0",
                    gateway_id=self.internet_gateway.id,
                )
            ],
            tags={"Name": f"{self.infra.cluster_name}-public-rt"},
        )

        for i, subnet in enumerate(self.subnets["public"]):
            RouteTableAssociation(
                self,
                f"public_rta_{i}",
                subnet_id=subnet.id,
                route_table_id=public_rt.id,
            )

        # Private route tables; zones share the single NAT gateway when enabled
        for i, subnet in enumerate(self.subnets["private"]):
            nat = self.nat_gateways[i % len(self.nat_gateways)]
            private_rt = RouteTable(
                self,
                f"private_rt_{i}",
                vpc_id=self.vpc.id,
                route=[
                    RouteTableRoute(
                        cidr_block="0.0.0.0/0",
                        nat_gateway_id=nat.id,
                    )
                ],
                tags={"Name": f"{self.infra.cluster_name}-private-rt-{i}"},
            )

            RouteTableAssociation(
                self,
                f"private_rta_{i}",
                subnet_id=subnet.id,
                route_table_id=private_rt.id,
            )

    def _create_outputs(self) -> None:
        TerraformOutput(self, "vpc_id", value=self.vpc.id, description="VPC ID")

        TerraformOutput(
            self,
            "private_subnet_ids",
            value=[s.id for s in self.subnets["private"]],
            description="Private subnet IDs",
        )

        TerraformOutput(
            self,
            "public_subnet_ids",
            value=[s.id for s in self.subnets["public"]],
            description="Public subnet IDs",
        )
